"""Static prompt templates offered to MCP clients."""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Mapping, Optional

from .tools import CONTROL_STRUCTURE, GENERATE_IMAGE_SD35, REMOVE_BACKGROUND, UPSCALE_CREATIVE

_PLACEHOLDER = re.compile(r"{{(.*?)}}")

_RESOURCE_HINT = (
    "The user should provide an image name or location that matches a resource from list_resources "
    "(if the results from this tool are not in recent conversation history, run it again so you have "
    "an up-to-date list of resources)."
)


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    description: str
    template: str


def inject_prompt_template(template: str, args: Optional[Mapping[str, str]]) -> str:
    """Replace ``{{name}}`` entries with ``args[name]``.

    Placeholders without a (non-empty) value are left verbatim.
    """
    if not args:
        return template
    return _PLACEHOLDER.sub(lambda match: args.get(match.group(1)) or match.group(0), template)


PROMPTS: List[PromptTemplate] = [
    PromptTemplate(
        name="generate-image-from-text",
        description="Generate a new image with configurable description, style, and aspect ratio",
        template=(
            f"Generate an image for the user using {GENERATE_IMAGE_SD35}. "
            "Make sure to ask the user for feedback after the generation."
        ),
    ),
    PromptTemplate(
        name="generate-image-using-structure",
        description=(
            "Generate an image while maintaining the structure (i.e. background, context) of a reference image"
        ),
        template=(
            f"{_RESOURCE_HINT} Try using {CONTROL_STRUCTURE} to generate an image that maintains the "
            "structure of the indicated image. Make sure to ask the user for feedback after the generation."
        ),
    ),
    PromptTemplate(
        name="upscale-image",
        description="Upscale the quality of an image",
        template=(
            f"{_RESOURCE_HINT} Try using {UPSCALE_CREATIVE} to upscale the indicated image. "
            "Make sure to ask the user for feedback after the upscaling."
        ),
    ),
    PromptTemplate(
        name="edit-image",
        description="Make a minor modification to an existing image",
        template=(
            f"{_RESOURCE_HINT}\n\n"
            "At this time, we can only perform one kind of change:\n"
            f"- \"remove background\": we use {REMOVE_BACKGROUND} to make the background of the image "
            "transparent\n\n"
            "Examples of invalid changes we cannot perform at this time:\n"
            "- Add {object} (without removing anything)\n"
            "- Tweak {object} (in a way we cannot rephrase to replace it altogether)\n\n"
            "If the user provided something like this, then we should not proceed; inform the user we can "
            "only do \"remove background\" changes.\n\n"
            "Make sure to ask the user for feedback after any generation attempt."
        ),
    ),
]


def get_prompt_template(name: str) -> PromptTemplate:
    for prompt in PROMPTS:
        if prompt.name == name:
            return prompt
    raise ValueError(f"Prompt not found: {name}")
