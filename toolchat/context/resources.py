"""On-disk status of the stateful resources held in context."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Sequence

from toolchat.context.message import ChatMessage
from toolchat.context.parts import FunctionResponsePart
from toolchat.context.pruner import ToolBehaviorSource
from toolchat.logging import get_logger

logger = get_logger(__name__)


class ResourceStatus(str, Enum):
    VALID = "VALID"
    STALE = "STALE"  # disk copy is newer or differs in size
    OLDER = "OLDER"  # disk copy predates the one in context
    DELETED = "DELETED"
    UNKNOWN = "UNKNOWN"  # the response carries no size/mtime to compare
    ERROR = "ERROR"


@dataclass
class StatefulResourceStatus:
    resource_id: str
    tool: str
    status: ResourceStatus
    message_id: int
    part_index: int
    tool_call_id: str | None = None
    context_size: int | None = None
    context_last_modified: datetime | None = None
    disk_size: int | None = None
    disk_last_modified: datetime | None = None


def _parse_mtime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return None
    return None


def check_disk_status(status: StatefulResourceStatus) -> StatefulResourceStatus:
    """Fill in the disk fields of *status* and classify it against the context copy."""
    path = Path(status.resource_id)
    try:
        if not path.exists():
            status.status = ResourceStatus.DELETED
            return status
        stat = path.stat()
    except OSError as e:
        logger.warning("resource_status_check_failed", resource_id=status.resource_id, error=str(e))
        status.status = ResourceStatus.ERROR
        return status

    status.disk_size = stat.st_size
    status.disk_last_modified = datetime.fromtimestamp(stat.st_mtime)
    if status.context_last_modified is None:
        status.status = ResourceStatus.UNKNOWN
    elif status.disk_last_modified > status.context_last_modified:
        status.status = ResourceStatus.STALE
    elif status.disk_last_modified < status.context_last_modified:
        status.status = ResourceStatus.OLDER
    elif status.context_size is not None and status.disk_size != status.context_size:
        status.status = ResourceStatus.STALE
    else:
        status.status = ResourceStatus.VALID
    return status


def stateful_resources_overview(
    messages: Sequence[ChatMessage],
    behaviors: ToolBehaviorSource,
) -> list[StatefulResourceStatus]:
    """
    One entry per resource id found in *messages*, the most recent copy winning.

    Only successful STATEFUL_REPLACE responses carry a resource id, so error
    responses and other tools are skipped.
    """
    latest: dict[str, StatefulResourceStatus] = {}
    for message in messages:
        for index, part in enumerate(message.parts):
            if not isinstance(part, FunctionResponsePart):
                continue
            resource_id = behaviors.resource_id_of(part.name, part.response)
            if resource_id is None:
                continue
            output = part.response.get("output")
            output = output if isinstance(output, dict) else {}
            size = output.get("size")
            latest.pop(resource_id, None)
            latest[resource_id] = StatefulResourceStatus(
                resource_id=resource_id,
                tool=part.name,
                status=ResourceStatus.UNKNOWN,
                message_id=message.id,
                part_index=index,
                tool_call_id=part.id,
                context_size=size if isinstance(size, int) else None,
                context_last_modified=_parse_mtime(output.get("last_modified")),
            )
    return [check_disk_status(status) for status in latest.values()]
