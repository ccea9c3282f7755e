"""Fill a ComfyUI workflow template with per-call input values."""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterable


class PromptBuilder:
    """Map named inputs and outputs onto node addresses inside a workflow.

    Input addresses use the `<node id>.inputs.<field>` form. The template is
    deep-copied so the loaded original is never mutated between calls.
    """

    def __init__(self, workflow: Dict[str, Any], input_keys: Iterable[str], output_keys: Iterable[str]) -> None:
        self.workflow = copy.deepcopy(workflow)
        self._input_keys = set(input_keys)
        self._output_keys = set(output_keys)
        self._input_paths: Dict[str, str] = {}
        self.output_nodes: Dict[str, str] = {}

    def set_input_node(self, key: str, path: str) -> "PromptBuilder":
        if key not in self._input_keys:
            raise KeyError(f"Unknown input key {key!r}")
        self._input_paths[key] = path
        return self

    def set_output_node(self, key: str, node_id: str) -> "PromptBuilder":
        if key not in self._output_keys:
            raise KeyError(f"Unknown output key {key!r}")
        self.output_nodes[key] = node_id
        return self

    def input(self, key: str, value: Any) -> "PromptBuilder":
        """Write `value` at the address mapped for `key`."""
        path = self._input_paths.get(key)
        if path is None:
            raise KeyError(f"No node address mapped for input {key!r}")
        *parents, leaf = path.split(".")
        target: Any = self.workflow
        for part in parents:
            if not isinstance(target, dict):
                raise KeyError(f"Workflow path {path!r} does not resolve to an object")
            target = target.setdefault(part, {})
        if not isinstance(target, dict):
            raise KeyError(f"Workflow path {path!r} does not resolve to an object")
        target[leaf] = value
        return self

    def output_key_for(self, node_id: str) -> str | None:
        for key, mapped in self.output_nodes.items():
            if mapped == node_id:
                return key
        return None
