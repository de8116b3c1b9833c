from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import petl as etl

from tidyverbs.engine.ops import lookup
from tidyverbs.errors import TidyUserError
from tidyverbs.models.dataset import Dataset

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover
    yaml = None

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineCall:
    op: str
    params: Dict[str, Any] = field(default_factory=dict)

    def apply(self, data: Dataset, *, context: "ExecutionContext") -> Dataset:
        impl = lookup(self.op)
        impl.validate_params(self.params)
        return impl.apply(data, params=self.params, context=context)

    def render(self) -> str:
        return lookup(self.op).render(self.params)

    def to_ir(self) -> Dict[str, Any]:
        return {"op": self.op, "params": lookup(self.op).to_ir(self.params)}

    def __str__(self) -> str:
        return self.render()


@dataclass
class Plan:
    """The engine calls one verb invocation compiles to, in execution order."""

    verb: str
    steps: List[EngineCall] = field(default_factory=list)

    def then(self, step: EngineCall) -> "Plan":
        if not isinstance(step, EngineCall):
            raise TidyUserError(
                "E_PLAN_STEP",
                "Plan.then expects an EngineCall.",
                hint="Example: plan.then(EngineCall('ungroup'))",
            )
        return Plan(self.verb, self.steps + [step])

    def __str__(self) -> str:
        parts = [f"{self.verb}(data)"]
        for s in self.steps:
            parts.append(f"  |> {s}")
        return "\n".join(parts)

    def run(self, data: Dataset, context: Optional["ExecutionContext"] = None) -> Dataset:
        ctx = context if context is not None else ExecutionContext()
        for i, step in enumerate(self.steps):
            data = step.apply(data, context=ctx)

            # Deterministic checkpoint: record the shape after each call.
            preview_rows = list(etl.data(etl.head(data.table, 5)))
            ctx.checkpoints.append(
                (
                    "step",
                    {
                        "index": i,
                        "op": step.op,
                        "header": list(data.header),
                        "nrows": data.nrows,
                        "groups": list(data.group_keys),
                        "preview": preview_rows,
                    },
                )
            )
            logger.debug("%s step %d %s -> %d rows", self.verb, i, step.op, data.nrows)
        return data

    def to_ir(self) -> Dict[str, Any]:
        """Serialize this plan to a YAML-friendly IR (dict)."""
        return {
            "tidyverbs": 0,
            "plan": {
                "verb": self.verb,
                "steps": [s.to_ir() for s in self.steps],
            },
        }

    def to_yaml(self, path: Optional[Union[str, Path]] = None) -> str:
        """Dump IR to YAML string. If `path` is provided, also write the file."""
        if yaml is None:
            raise TidyUserError(
                "E_YAML_IMPORT",
                "PyYAML is not available; cannot serialize to YAML.",
                hint="Install dependency: pip install pyyaml",
            )
        text = yaml.safe_dump(self.to_ir(), sort_keys=False)
        if path is not None:
            p = Path(path)
            p.write_text(text, encoding="utf-8")
        return text


@dataclass
class ExecutionContext:
    checkpoints: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)
