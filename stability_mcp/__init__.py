"""Stability AI MCP Server - image generation and editing over MCP.

This package exposes Stability AI's Stable Diffusion 3.5, background removal,
creative upscale and structure-control endpoints as MCP tools, and serves the
resulting images back as MCP resources.
"""

__version__ = "0.1.0"

from .client import PollPolicy, StabilityAiApiClient
from .config import ServerConfig, load_config
from .errors import (
    ConfigurationError,
    InvalidParametersError,
    JobTimeoutError,
    ProviderApiError,
    ProviderError,
    ResourceNotFoundError,
    StabilityMcpError,
    StorageError,
    ToolArgumentError,
    UnexpectedStatusError,
    UnknownToolError,
)
from .models import GenerationRequest, GenerationResult, JobHandle, Operation, ResourceContext
from .prompts import PROMPTS, inject_prompt_template
from .resources import FilesystemResourceStore, ResourceStore, S3ResourceStore, create_resource_store
from .server import create_server
from .tools import TOOL_SPECS, ToolDispatcher

__all__ = [name for name in locals() if not name.startswith("_")]
