"""Load the ComfyUI workflow template and fill it for each job."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import aiofiles

from models.job_models import JobSpec
from services.comfy.prompt_builder import PromptBuilder
from services.generation.job_adapter import OUTPUT_KEY
from utils.errors import TemplateLoadError
from utils.settings import Settings

LOGGER = logging.getLogger(__name__)

PROMPT_KEY = "positive_prompt"
SEED_KEY = "seed"


@dataclass(frozen=True)
class NodeAddresses:
    """Where the prompt, the seed and the output live inside the workflow."""

    positive_prompt: str
    seed: str
    output_node: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "NodeAddresses":
        return cls(
            positive_prompt=f"{settings.positive_prompt_node_id}.inputs.{settings.positive_prompt_input_name}",
            seed=f"{settings.seed_node_id}.inputs.{settings.seed_input_name}",
            output_node=settings.output_node_id,
        )


class WorkflowTemplate:
    """An opaque workflow graph plus the addresses substituted on every call."""

    def __init__(self, workflow: Dict[str, Any], addresses: NodeAddresses) -> None:
        self.workflow = workflow
        self.addresses = addresses

    @classmethod
    async def load(cls, path: Path, addresses: NodeAddresses) -> "WorkflowTemplate":
        """Read and parse the template file.

        Raises:
            TemplateLoadError: If the file is missing, unreadable or not a JSON object.
        """
        LOGGER.info("Attempting to load workflow from: %s", path)
        try:
            async with aiofiles.open(path, "r", encoding="utf-8") as handle:
                raw = await handle.read()
            workflow = json.loads(raw)
        except (OSError, ValueError) as exc:
            raise TemplateLoadError(f"Could not load workflow file from {path}: {exc}") from exc
        if not isinstance(workflow, dict):
            raise TemplateLoadError(f"Workflow file {path} must contain a JSON object")
        LOGGER.info("Workflow loaded successfully.")
        return cls(workflow, addresses)

    def build(self, spec: JobSpec) -> PromptBuilder:
        """Return a builder holding a copy of the template with the job's inputs applied."""
        return (
            PromptBuilder(self.workflow, [PROMPT_KEY, SEED_KEY], [OUTPUT_KEY])
            .set_input_node(PROMPT_KEY, self.addresses.positive_prompt)
            .set_input_node(SEED_KEY, self.addresses.seed)
            .set_output_node(OUTPUT_KEY, self.addresses.output_node)
            .input(PROMPT_KEY, spec.prompt)
            .input(SEED_KEY, spec.seed)
        )
