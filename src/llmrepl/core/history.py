from __future__ import annotations
import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Literal, Optional

Status = Literal["complete", "cancelled", "failed"]


class RecordKind(str, Enum):
    QUERY = "query"
    COMMAND = "command"
    SHELL = "shell"
    ERROR = "error"


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@dataclass(frozen=True)
class InteractionRecord:
    """
    One completed interaction. Immutable once appended to SessionState.
    - status 'cancelled': caller abandoned a stream; output holds the partial text
    - status 'failed': error records; output holds any partial text, error the detail
    """
    kind: RecordKind
    input: str
    output: str
    backend: str
    model: str
    status: Status = "complete"
    error: Optional[str] = None
    source: Optional[str] = None
    timestamp: dt.datetime = field(default_factory=_utcnow)

    @property
    def complete(self) -> bool:
        return self.status == "complete"

    @classmethod
    def failure(
        cls,
        source: str,
        input: str,
        exc: BaseException,
        *,
        backend: str,
        model: str,
        partial: str = "",
    ) -> "InteractionRecord":
        return cls(
            kind=RecordKind.ERROR,
            input=input,
            output=partial,
            backend=backend,
            model=model,
            status="failed",
            error=str(exc),
            source=source,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ts": self.timestamp.isoformat(),
            "kind": self.kind.value,
            "input": self.input,
            "output": self.output,
            "backend": self.backend,
            "model": self.model,
            "status": self.status,
            "error": self.error,
            "source": self.source,
        }
