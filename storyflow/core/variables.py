"""Per-execution variable store and template resolution.

Templates use two forms:

- ``{{name}}`` - the current value of a variable
- ``{{@nodeId > label}}`` - the most recent output of a node in this run; the
  ``> label`` part is display-only and ignored

Resolution is a single pass: substituted values are never re-scanned, so a
variable whose value contains ``{{...}}`` cannot trigger further expansion.
Unknown names resolve to the empty string.
"""

from __future__ import annotations

import copy
import re
from typing import Any

# {{ name }} or {{ @nodeId > label }}
_TEMPLATE_RE = re.compile(r"\{\{\s*(@?)([^{}>]*?)\s*(?:>[^{}]*)?\}\}")

# Config keys naming a value to look up; resolve_config leaves them verbatim
REFERENCE_KEYS = frozenset({"input_variable", "condition_variable", "variable"})


class VariableStore:
    """Mutable name -> text mapping owned by one execution (or one item-run)."""

    def __init__(
        self,
        variables: dict[str, str] | None = None,
        node_outputs: dict[str, str] | None = None,
        last_output: str = "",
        initial_input: str = "",
        history: dict[str, list[dict[str, str]]] | None = None,
    ):
        self._variables: dict[str, str] = dict(variables or {})
        self._node_outputs: dict[str, str] = dict(node_outputs or {})
        self._history: dict[str, list[dict[str, str]]] = copy.deepcopy(history or {})
        self.last_output = last_output
        self.initial_input = initial_input

    # ========== Variables ==========

    def get(self, name: str) -> str | None:
        return self._variables.get(name)

    def set(self, name: str, value: str) -> None:
        self._variables[name] = "" if value is None else str(value)

    def has(self, name: str) -> bool:
        return name in self._variables

    def variables(self) -> dict[str, str]:
        return dict(self._variables)

    # ========== Node outputs ==========

    def get_node_output(self, node_id: str) -> str | None:
        return self._node_outputs.get(node_id)

    def record_output(self, node_id: str, output: str) -> None:
        """Record a node's output for ``{{@nodeId}}`` and as the last output."""
        self._node_outputs[node_id] = output
        self.last_output = output

    def replace_output(self, node_id: str, output: str) -> None:
        """Overwrite a recorded output without touching ``last_output``."""
        self._node_outputs[node_id] = output

    # ========== Conversation history ==========

    def add_history(self, node_id: str, role: str, content: str) -> None:
        self._history.setdefault(node_id, []).append({"role": role, "content": content})

    def get_history(self, node_id: str, limit: int | None = None) -> list[dict[str, str]]:
        """Most recent ``limit`` messages of an ai_chat node (all when falsy)."""
        history = self._history.get(node_id, [])
        if limit:
            history = history[-limit:]
        return [dict(m) for m in history]

    # ========== Resolution ==========

    def lookup(self, reference: str | None) -> str:
        """Resolve a reference such as ``@node_1``, ``node_1``, ``topic`` or
        ``{{@node_1 > Draft}}``.

        Node outputs win over variables of the same name. A reference holding
        template markup is resolved as a template.
        """
        if not reference:
            return ""
        ref = reference.strip()
        if "{{" in ref:
            return self.resolve(ref)
        if ref.startswith("@"):
            ref = ref[1:].split(">", 1)[0].strip()
        output = self._node_outputs.get(ref)
        if output is not None:
            return output
        return self._variables.get(ref, "")

    def resolve(self, template: str | None) -> str:
        """Substitute every template reference in one pass."""
        if not template:
            return ""

        def substitute(match: re.Match) -> str:
            is_node_ref, name = match.group(1), match.group(2).strip()
            if is_node_ref:
                return self._node_outputs.get(name, "")
            return self._variables.get(name, "")

        return _TEMPLATE_RE.sub(substitute, template)

    def resolve_config(self, config: Any) -> Any:
        """Resolve every string inside a (possibly nested) config structure.

        Values under ``REFERENCE_KEYS`` are kept as written for ``lookup``.
        """
        if isinstance(config, str):
            return self.resolve(config)
        if isinstance(config, dict):
            return {
                key: value if key in REFERENCE_KEYS else self.resolve_config(value)
                for key, value in config.items()
            }
        if isinstance(config, list):
            return [self.resolve_config(value) for value in config]
        return config

    # ========== Scoping and snapshots ==========

    def clone(self) -> VariableStore:
        """Isolated copy; writes to the clone never reach this store."""
        return VariableStore(
            variables=self._variables,
            node_outputs=self._node_outputs,
            last_output=self.last_output,
            initial_input=self.initial_input,
            history=self._history,
        )

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable state, suitable for ``variables_snapshot``."""
        return copy.deepcopy(
            {
                "variables": self._variables,
                "node_outputs": self._node_outputs,
                "last_output": self.last_output,
                "initial_input": self.initial_input,
                "history": self._history,
            }
        )

    @classmethod
    def from_snapshot(cls, snapshot: dict[str, Any]) -> VariableStore:
        return cls(
            variables=snapshot.get("variables") or {},
            node_outputs=snapshot.get("node_outputs") or {},
            last_output=snapshot.get("last_output") or "",
            initial_input=snapshot.get("initial_input") or "",
            history=snapshot.get("history") or {},
        )
