"""Turns raw worker output into supervisor log records."""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from core.log import LogLevel
from daemon.protocol import Instance


STRUCTURED_PREFIX = '{"type"'


class LineClass(Enum):
    STRUCTURED = "structured"
    UNSTRUCTURED = "unstructured"


@dataclass
class LogRecord:
    """A leveled, typed record attributed to a worker instance."""
    level: LogLevel
    type: str
    payload: dict[str, Any]
    instance: Optional[Instance] = None

    def to_record(self) -> dict[str, Any]:
        return {"type": self.type, "payload": self.payload}


@dataclass
class RawDiagnostic:
    """Output that must bypass the structured logger."""
    line: str
    instance: Optional[Instance] = None


Demultiplexed = Union[LogRecord, RawDiagnostic]


def classify(line: str) -> LineClass:
    """A line is structured iff it starts with the exact envelope prefix."""
    if line[:len(STRUCTURED_PREFIX)] == STRUCTURED_PREFIX:
        return LineClass.STRUCTURED
    return LineClass.UNSTRUCTURED


def _instance_payload(instance: Optional[Instance]) -> Optional[dict[str, Any]]:
    return instance.to_dict() if instance is not None else None


class LogDemultiplexer:
    """
    Stateless classifier for worker stdout/stderr.

    | stream | class        | result                                      |
    |--------|--------------|---------------------------------------------|
    | stdout | unstructured | INFO server-log {instance, msg}             |
    | stdout | structured   | envelope re-emitted at its own level        |
    | stderr | unstructured | ERROR server-err + DEBUG server-err-stack   |
    | stderr | structured   | RawDiagnostic                               |

    Malformed structured stdout is not caught: ``json.loads`` and the level
    lookup raise straight through to the caller.
    """

    def demultiplex(
        self,
        stream: str,
        line: str,
        instance: Optional[Instance] = None,
    ) -> list[Demultiplexed]:
        structured = classify(line) is LineClass.STRUCTURED

        if stream == "stdout":
            if structured:
                return [self._from_envelope(line, instance)]
            return [LogRecord(
                level=LogLevel.INFO,
                type="server-log",
                payload={"instance": _instance_payload(instance), "msg": line.strip()},
                instance=instance,
            )]

        if stream == "stderr":
            if structured:
                return [RawDiagnostic(line=line, instance=instance)]
            error, *stack = line.split("\n")
            return [
                LogRecord(
                    level=LogLevel.ERROR,
                    type="server-err",
                    payload={"instance": _instance_payload(instance), "error": error},
                    instance=instance,
                ),
                LogRecord(
                    level=LogLevel.DEBUG,
                    type="server-err-stack",
                    payload={"instance": _instance_payload(instance), "stack": stack},
                    instance=instance,
                ),
            ]

        raise ValueError(f"Unknown output stream: {stream}")

    def _from_envelope(self, line: str, instance: Optional[Instance]) -> LogRecord:
        envelope = json.loads(line)
        payload = dict(envelope.get("payload") or {})
        payload["instance"] = _instance_payload(instance)
        return LogRecord(
            level=LogLevel[envelope["level"]],
            type=envelope["type"],
            payload=payload,
            instance=instance,
        )
