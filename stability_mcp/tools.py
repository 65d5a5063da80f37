"""Tool registry and dispatch.

Each tool pairs a pydantic argument model (which is also its advertised input
schema) with an async handler. ``ToolDispatcher.dispatch`` validates the
arguments centrally, runs the handler and writes the resulting image (and
optional metadata sidecar) through the resource store.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Literal, Mapping, Optional, Type

import httpx
from mcp import types
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .client import StabilityAiApiClient
from .errors import StabilityMcpError, ToolArgumentError, UnknownToolError
from .images import decode_generation_result, infer_extension
from .models import GenerationRequest, MetadataRecord, Operation, ResourceContext
from .resources import ResourceStore

logger = logging.getLogger(__name__)

GENERATE_IMAGE_SD35 = "stability-ai-generate-image-sd35"
REMOVE_BACKGROUND = "stability-ai-remove-background"
UPSCALE_CREATIVE = "stability-ai-upscale-creative"
CONTROL_STRUCTURE = "stability-ai-control-structure"

OutputFormat = Literal["png", "jpeg", "webp"]
AspectRatio = Literal["16:9", "1:1", "21:9", "2:3", "3:2", "4:5", "5:4", "9:16", "9:21"]
SD35Model = Literal["sd3.5-large", "sd3.5-large-turbo", "sd3.5-medium"]
StylePreset = Literal[
    "3d-model", "analog-film", "anime", "cinematic", "comic-book", "digital-art",
    "enhance", "fantasy-art", "isometric", "line-art", "low-poly", "modeling-compound",
    "neon-punk", "origami", "photographic", "pixel-art", "tile-texture",
]

MAX_SEED = 4294967294


class ToolArguments(BaseModel):
    """Shared configuration for tool argument models."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    output_image_file_name: str = Field(
        alias="outputImageFileName",
        min_length=1,
        description="Desired name of the output image file, without extension",
    )

    @field_validator("output_image_file_name")
    @classmethod
    def _plain_file_name(cls, value: str) -> str:
        value = value.strip()
        if not value or "/" in value or "\\" in value or ".." in value:
            raise ValueError("must be a plain file name without path separators")
        return value


class SourceImageArguments(ToolArguments):
    image_file_uri: str = Field(
        alias="imageFileUri",
        min_length=1,
        description="URI of the source image, as returned by list_resources",
    )


class GenerateImageSD35Args(ToolArguments):
    prompt: str = Field(min_length=1, max_length=10000, description="What you wish to see in the output image")
    negative_prompt: Optional[str] = Field(
        default=None, alias="negativePrompt", max_length=10000,
        description="What you do not wish to see in the output image",
    )
    aspect_ratio: AspectRatio = Field(default="1:1", alias="aspectRatio")
    model: SD35Model = "sd3.5-large"
    cfg_scale: Optional[float] = Field(
        default=None, alias="cfgScale", ge=1, le=10,
        description="How strictly the diffusion process adheres to the prompt",
    )
    style_preset: Optional[StylePreset] = Field(default=None, alias="stylePreset")
    seed: Optional[int] = Field(default=None, ge=0, le=MAX_SEED)
    output_format: OutputFormat = Field(default="png", alias="outputFormat")


class RemoveBackgroundArgs(SourceImageArguments):
    output_format: Literal["png", "webp"] = Field(default="png", alias="outputFormat")


class UpscaleCreativeArgs(SourceImageArguments):
    prompt: str = Field(min_length=1, max_length=10000, description="What you wish to see in the upscaled image")
    negative_prompt: Optional[str] = Field(default=None, alias="negativePrompt", max_length=10000)
    seed: Optional[int] = Field(default=None, ge=0, le=MAX_SEED)
    creativity: Optional[float] = Field(
        default=None, ge=0.1, le=0.5,
        description="How much additional detail to invent; higher values are more creative",
    )
    output_format: OutputFormat = Field(default="png", alias="outputFormat")


class ControlStructureArgs(SourceImageArguments):
    prompt: str = Field(min_length=1, max_length=10000, description="What you wish to see in the output image")
    control_strength: Optional[float] = Field(
        default=None, alias="controlStrength", ge=0, le=1,
        description="How much influence the source image has on the generation",
    )
    negative_prompt: Optional[str] = Field(default=None, alias="negativePrompt", max_length=10000)
    seed: Optional[int] = Field(default=None, ge=0, le=MAX_SEED)
    output_format: OutputFormat = Field(default="png", alias="outputFormat")


ToolHandler = Callable[["ToolDispatcher", Any, GenerationRequest, ResourceContext], Awaitable[str]]


@dataclass(frozen=True)
class ToolSpec:
    """A named capability: its schema model plus the handler producing base64 image data."""
    name: str
    description: str
    arguments: Type[ToolArguments]
    operation: Operation
    handler: ToolHandler

    def definition(self) -> types.Tool:
        return types.Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.arguments.model_json_schema(by_alias=True),
        )


def _format_validation_error(exc: ValidationError) -> List[str]:
    problems = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ())) or "arguments"
        problems.append(f"{field}: {error.get('msg', 'invalid value')}")
    return problems


def build_request(operation: Operation, args: ToolArguments) -> GenerationRequest:
    """Map validated tool arguments onto a provider GenerationRequest."""
    return GenerationRequest(
        operation=operation,
        prompt=getattr(args, "prompt", ""),
        negative_prompt=getattr(args, "negative_prompt", None),
        seed=getattr(args, "seed", None),
        output_format=getattr(args, "output_format", "png"),
        creativity=getattr(args, "creativity", None),
        control_strength=getattr(args, "control_strength", None),
        aspect_ratio=getattr(args, "aspect_ratio", None),
        model=getattr(args, "model", None),
        cfg_scale=getattr(args, "cfg_scale", None),
        style_preset=getattr(args, "style_preset", None),
        source_image=getattr(args, "image_file_uri", None),
    )


async def _generate_image_sd35(dispatcher: "ToolDispatcher", args: GenerateImageSD35Args,
                               request: GenerationRequest, context: ResourceContext) -> str:
    return await dispatcher.client.generate_image_sd35(request)


async def _with_source_image(dispatcher: "ToolDispatcher", args: SourceImageArguments,
                             context: ResourceContext, call: Callable[[Path], Awaitable[str]]) -> str:
    image_path = await dispatcher.store.resource_to_file(args.image_file_uri, context)
    try:
        return await call(image_path)
    finally:
        await dispatcher.store.release_file(image_path)


async def _remove_background(dispatcher: "ToolDispatcher", args: RemoveBackgroundArgs,
                             request: GenerationRequest, context: ResourceContext) -> str:
    return await _with_source_image(
        dispatcher, args, context, lambda path: dispatcher.client.remove_background(path, request)
    )


async def _upscale_creative(dispatcher: "ToolDispatcher", args: UpscaleCreativeArgs,
                            request: GenerationRequest, context: ResourceContext) -> str:
    return await _with_source_image(
        dispatcher, args, context, lambda path: dispatcher.client.upscale_creative(path, request)
    )


async def _control_structure(dispatcher: "ToolDispatcher", args: ControlStructureArgs,
                             request: GenerationRequest, context: ResourceContext) -> str:
    return await _with_source_image(
        dispatcher, args, context, lambda path: dispatcher.client.control_structure(path, request)
    )


TOOL_SPECS: List[ToolSpec] = [
    ToolSpec(
        name=GENERATE_IMAGE_SD35,
        description=(
            "Generate an image from a text prompt using Stable Diffusion 3.5. "
            "Be specific about subject, style, lighting and composition."
        ),
        arguments=GenerateImageSD35Args,
        operation=Operation.GENERATE,
        handler=_generate_image_sd35,
    ),
    ToolSpec(
        name=REMOVE_BACKGROUND,
        description="Remove the background from an image, leaving the subject on a transparent background.",
        arguments=RemoveBackgroundArgs,
        operation=Operation.REMOVE_BACKGROUND,
        handler=_remove_background,
    ),
    ToolSpec(
        name=UPSCALE_CREATIVE,
        description=(
            "Upscale a low-resolution image (up to 4K), reimagining detail as guided by the prompt. "
            "This runs as a background job and can take a minute or more."
        ),
        arguments=UpscaleCreativeArgs,
        operation=Operation.UPSCALE_CREATIVE,
        handler=_upscale_creative,
    ),
    ToolSpec(
        name=CONTROL_STRUCTURE,
        description=(
            "Generate a new image that keeps the structure (layout, edges, background) "
            "of a reference image while following the prompt."
        ),
        arguments=ControlStructureArgs,
        operation=Operation.CONTROL_STRUCTURE,
        handler=_control_structure,
    ),
]


class ToolDispatcher:
    """Validate, run and persist tool invocations."""

    def __init__(
        self,
        client: StabilityAiApiClient,
        store: ResourceStore,
        *,
        save_metadata: bool = True,
        save_metadata_failed: bool = True,
        specs: Optional[List[ToolSpec]] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.save_metadata = save_metadata
        self.save_metadata_failed = save_metadata_failed
        self._specs: Dict[str, ToolSpec] = {spec.name: spec for spec in (specs or TOOL_SPECS)}

    def definitions(self) -> List[types.Tool]:
        return [spec.definition() for spec in self._specs.values()]

    def validate(self, name: str, arguments: Optional[Mapping[str, Any]]) -> ToolArguments:
        """Look up a tool and validate its arguments.

        Raises:
            UnknownToolError: If no tool has this name.
            ToolArgumentError: Naming every violated field and the reason.
        """
        spec = self._specs.get(name)
        if spec is None:
            raise UnknownToolError(name)
        try:
            return spec.arguments.model_validate(dict(arguments or {}))
        except ValidationError as exc:
            raise ToolArgumentError(_format_validation_error(exc)) from exc

    async def dispatch(
        self,
        name: str,
        arguments: Optional[Mapping[str, Any]],
        context: Optional[ResourceContext] = None,
    ) -> List[types.TextContent]:
        """Run a tool and return a content envelope referencing the stored image."""
        context = context or ResourceContext()
        args = self.validate(name, arguments)
        spec = self._specs[name]
        request_params = args.model_dump(by_alias=True, exclude_none=True)
        identifier = f"{args.output_image_file_name}{infer_extension(getattr(args, 'output_format', 'png'))}"
        logger.info("Running %s for %s", name, context.requestor_ip_address or "local client")

        try:
            base64_image = await spec.handler(self, args, build_request(spec.operation, args), context)
            result = decode_generation_result(base64_image, getattr(args, "output_format", "png"))
            identifier = f"{args.output_image_file_name}{infer_extension(result.output_format)}"
            stored = await self.store.write_resource(identifier, result.buffer, result.mime_type, context)
        except (StabilityMcpError, httpx.HTTPError, OSError, ValueError, RuntimeError) as exc:
            if self.save_metadata_failed:
                await self._record(identifier, MetadataRecord(request_params=request_params, error=str(exc)))
            raise

        if self.save_metadata:
            await self._record(
                identifier,
                MetadataRecord(
                    request_params=request_params,
                    success_info={
                        "uri": stored.uri,
                        "mimeType": stored.mime_type,
                        "sizeBytes": len(result.buffer),
                    },
                ),
            )

        return [
            types.TextContent(
                type="text",
                text=f"Processed image \"{stored.name}\" and saved it as resource {stored.uri}",
            )
        ]

    async def _record(self, identifier: str, record: MetadataRecord) -> None:
        try:
            await self.store.write_metadata(identifier, record)
        except (StabilityMcpError, OSError) as exc:
            logger.warning("Could not write metadata for %s: %s", identifier, exc)
