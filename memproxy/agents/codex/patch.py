"""Parse the ``apply_patch`` envelope for the files it touches."""
from __future__ import annotations

from memproxy.agents.base import dedupe
from memproxy.models import PatchSummary

ADD_FILE_PREFIX = "*** Add File: "
UPDATE_FILE_PREFIX = "*** Update File: "
DELETE_FILE_PREFIX = "*** Delete File: "
MOVE_TO_PREFIX = "*** Move to: "

_OPERATION_PREFIXES = (
    (ADD_FILE_PREFIX, "add"),
    (UPDATE_FILE_PREFIX, "update"),
    (DELETE_FILE_PREFIX, "delete"),
)


def parse_patch_content(patch_text: str) -> PatchSummary:
    """Collect file operations from patch text.

    ``Move to`` lines only count while a file operation is open. The file
    list keeps first-seen order without duplicates.
    """
    files: list[str] = []
    operations: list[dict[str, str]] = []
    has_add = False
    has_delete = False
    current: dict[str, str] | None = None

    for line in (patch_text or "").splitlines():
        for prefix, op_type in _OPERATION_PREFIXES:
            if line.startswith(prefix):
                path = line[len(prefix):].strip()
                files.append(path)
                current = {"type": op_type, "file": path}
                operations.append(current)
                has_add = has_add or op_type == "add"
                has_delete = has_delete or op_type == "delete"
                break
        else:
            if line.startswith(MOVE_TO_PREFIX) and current is not None:
                target = line[len(MOVE_TO_PREFIX):].strip()
                current["move_to"] = target
                files.append(target)

    return PatchSummary(
        files=dedupe(files),
        operations=operations,
        has_add=has_add,
        has_delete=has_delete,
    )
