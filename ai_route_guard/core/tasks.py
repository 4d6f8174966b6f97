"""
Typed retry task payloads.

Each task kind has one payload type. Payloads are validated once, when
they enter or leave the retry queue, and stored as plain dictionaries.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

from .errors import PayloadValidationError, UnknownTaskKindError

GENERATION_TASK = "generation"


@dataclass(frozen=True)
class GenerationTask:
    """A generation request deferred after every backend failed."""
    prompt: str
    task_type: Optional[str] = None
    context: Tuple[str, ...] = ()
    options: Dict[str, Any] = field(default_factory=dict)
    cost_ceiling: Optional[float] = None
    allow_fallback: bool = True

    kind = GENERATION_TASK

    def __post_init__(self):
        if not isinstance(self.prompt, str):
            raise PayloadValidationError("prompt must be a string")
        if self.task_type is not None and not isinstance(self.task_type, str):
            raise PayloadValidationError("task_type must be a string")
        if not all(isinstance(item, str) for item in self.context):
            raise PayloadValidationError("context must be a list of strings")
        if not isinstance(self.options, dict):
            raise PayloadValidationError("options must be a mapping")
        if self.cost_ceiling is not None and (
            not isinstance(self.cost_ceiling, (int, float)) or self.cost_ceiling < 0
        ):
            raise PayloadValidationError("cost_ceiling must be a non-negative number")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prompt": self.prompt,
            "task_type": self.task_type,
            "context": list(self.context),
            "options": dict(self.options),
            "cost_ceiling": self.cost_ceiling,
            "allow_fallback": self.allow_fallback,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationTask":
        allowed = {"prompt", "task_type", "context", "options", "cost_ceiling", "allow_fallback"}
        unknown = set(data) - allowed
        if unknown:
            raise PayloadValidationError(f"Unknown generation payload keys: {sorted(unknown)}")
        if "prompt" not in data:
            raise PayloadValidationError("generation payload requires 'prompt'")
        context = data.get("context") or ()
        if isinstance(context, str) or not isinstance(context, (list, tuple)):
            raise PayloadValidationError("context must be a list of strings")
        return cls(
            prompt=data["prompt"],
            task_type=data.get("task_type"),
            context=tuple(context),
            options=data.get("options") or {},
            cost_ceiling=data.get("cost_ceiling"),
            allow_fallback=bool(data.get("allow_fallback", True)),
        )


TASK_PAYLOADS = {
    GENERATION_TASK: GenerationTask,
}


def parse_task_payload(task_kind: str, payload: Dict[str, Any]) -> GenerationTask:
    """Validate a stored payload against its task kind.

    Raises:
        UnknownTaskKindError: If no payload type exists for ``task_kind``
        PayloadValidationError: If the payload is malformed
    """
    payload_type = TASK_PAYLOADS.get(task_kind)
    if payload_type is None:
        raise UnknownTaskKindError(task_kind)
    if not isinstance(payload, dict):
        raise PayloadValidationError(f"{task_kind} payload must be a mapping")
    return payload_type.from_dict(payload)
