"""Semantic diff engine.

Computes differences between two document revisions at two levels:
1. Line level: LCS-based matching of lines (difflib), with replaced runs
   paired up as in-place modifications.
2. Block level: content segmented into typed blocks (heading, paragraph,
   list, code, table) and matched at block granularity for a coarser,
   structural view.

The computation is presentation-agnostic. ``format_diff_for_card`` and
``format_diff_as_json`` render a finished DiffResult for display layers.
"""

from __future__ import annotations

import json
import time
from dataclasses import asdict, dataclass, field
from difflib import SequenceMatcher
from typing import Any, Literal

DiffChangeType = Literal["added", "removed", "modified"]
BlockType = Literal["heading", "paragraph", "list", "code", "table"]

CARD_BLOCK_PREVIEW = 5
CARD_PREVIEW_CHARS = 50


@dataclass
class LineDiff:
    """One changed line.

    ``line_number`` is 1-based and refers to the new document for added and
    modified lines and to the previous document for removed lines.
    """

    line_number: int
    change_type: DiffChangeType
    content: str
    previous_content: str | None = None
    context_before: str | None = None
    context_after: str | None = None


@dataclass
class Block:
    """A typed run of lines."""

    type: BlockType
    content: str


@dataclass
class BlockDiff:
    """One changed block."""

    block_id: str
    block_type: BlockType
    change_type: DiffChangeType
    content: str
    previous_content: str | None = None
    context_before: str | None = None
    context_after: str | None = None


@dataclass
class DiffSummary:
    added_lines: int = 0
    removed_lines: int = 0
    modified_lines: int = 0
    added_blocks: int = 0
    removed_blocks: int = 0
    modified_blocks: int = 0
    percent_changed: int = 0
    summary: str = "No changes detected"

    @property
    def total_changes(self) -> int:
        return self.added_lines + self.removed_lines + self.modified_lines


@dataclass
class DiffResult:
    previous_revision: int
    new_revision: int
    line_diffs: list[LineDiff] = field(default_factory=list)
    block_diffs: list[BlockDiff] = field(default_factory=list)
    summary: DiffSummary = field(default_factory=DiffSummary)
    compute_time_ms: float = 0.0

    @property
    def total_changes(self) -> int:
        return self.summary.total_changes

    @property
    def percent_changed(self) -> int:
        return self.summary.percent_changed

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["summary"]["total_changes"] = self.total_changes
        return data


def split_lines(content: str) -> list[str]:
    """Split content on line boundaries.

    Only ``\\n`` (and ``\\r\\n``) end a line, so unicode separators inside a
    line never inflate the count. An empty document has zero lines and a
    trailing newline does not add an empty final line.
    """
    if not content:
        return []
    lines = content.replace("\r\n", "\n").split("\n")
    if lines[-1] == "":
        lines.pop()
    return lines


def line_count(content: str) -> int:
    return len(split_lines(content))


def _at(items: list[str], index: int) -> str | None:
    if 0 <= index < len(items):
        return items[index]
    return None


def diff_lines(previous: list[str], current: list[str]) -> list[LineDiff]:
    """Line-level diff of two line lists."""
    diffs: list[LineDiff] = []
    matcher = SequenceMatcher(None, previous, current, autojunk=False)

    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue

        paired = min(i2 - i1, j2 - j1) if tag == "replace" else 0

        for k in range(paired):
            diffs.append(
                LineDiff(
                    line_number=j1 + k + 1,
                    change_type="modified",
                    content=current[j1 + k],
                    previous_content=previous[i1 + k],
                    context_before=_at(current, j1 + k - 1),
                    context_after=_at(current, j1 + k + 1),
                )
            )

        for i in range(i1 + paired, i2):
            diffs.append(
                LineDiff(
                    line_number=i + 1,
                    change_type="removed",
                    content=previous[i],
                    context_before=_at(previous, i - 1),
                    context_after=_at(previous, i + 1),
                )
            )

        for j in range(j1 + paired, j2):
            diffs.append(
                LineDiff(
                    line_number=j + 1,
                    change_type="added",
                    content=current[j],
                    context_before=_at(current, j - 1),
                    context_after=_at(current, j + 1),
                )
            )

    return diffs


def _classify_line(line: str) -> BlockType:
    stripped = line.lstrip()
    if stripped.startswith("#"):
        return "heading"
    if stripped.startswith(("- ", "* ", "+ ")) or stripped in ("-", "*", "+"):
        return "list"
    head, dot, _ = stripped.partition(". ")
    if dot and head.isdigit():
        return "list"
    if stripped.startswith("|"):
        return "table"
    return "paragraph"


def parse_blocks(content: str) -> list[Block]:
    """Segment content into typed blocks.

    Blank lines end a block, a change of line type starts a new one, each
    heading line is its own block and fenced code (```) is kept whole.
    """
    blocks: list[Block] = []
    current_type: BlockType | None = None
    current_lines: list[str] = []
    in_code = False

    def flush() -> None:
        nonlocal current_type, current_lines
        if current_type is not None:
            text = "\n".join(current_lines).strip()
            if text:
                blocks.append(Block(type=current_type, content=text))
        current_type = None
        current_lines = []

    for line in split_lines(content):
        if in_code:
            current_lines.append(line)
            if line.lstrip().startswith("```"):
                in_code = False
                flush()
            continue

        if line.lstrip().startswith("```"):
            flush()
            current_type = "code"
            current_lines = [line]
            in_code = True
            continue

        if not line.strip():
            flush()
            continue

        line_type = _classify_line(line)
        if line_type != current_type or line_type == "heading":
            flush()
            current_type = line_type
        current_lines.append(line)

    flush()
    return blocks


def diff_blocks(previous: list[Block], current: list[Block]) -> list[BlockDiff]:
    """Block-level diff of two block lists."""
    diffs: list[BlockDiff] = []
    prev_keys = [(b.type, b.content) for b in previous]
    curr_keys = [(b.type, b.content) for b in current]
    matcher = SequenceMatcher(None, prev_keys, curr_keys, autojunk=False)

    def content_at(blocks: list[Block], index: int) -> str | None:
        if 0 <= index < len(blocks):
            return blocks[index].content
        return None

    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag == "equal":
            continue

        paired = min(i2 - i1, j2 - j1) if tag == "replace" else 0

        for k in range(paired):
            block = current[j1 + k]
            diffs.append(
                BlockDiff(
                    block_id=f"block_{j1 + k}",
                    block_type=block.type,
                    change_type="modified",
                    content=block.content,
                    previous_content=previous[i1 + k].content,
                    context_before=content_at(current, j1 + k - 1),
                    context_after=content_at(current, j1 + k + 1),
                )
            )

        for i in range(i1 + paired, i2):
            block = previous[i]
            diffs.append(
                BlockDiff(
                    block_id=f"block_{i}",
                    block_type=block.type,
                    change_type="removed",
                    content=block.content,
                    context_before=content_at(previous, i - 1),
                    context_after=content_at(previous, i + 1),
                )
            )

        for j in range(j1 + paired, j2):
            block = current[j]
            diffs.append(
                BlockDiff(
                    block_id=f"block_{j}",
                    block_type=block.type,
                    change_type="added",
                    content=block.content,
                    context_before=content_at(current, j - 1),
                    context_after=content_at(current, j + 1),
                )
            )

    return diffs


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


def summarize(
    line_diffs: list[LineDiff],
    block_diffs: list[BlockDiff],
    previous_lines: int,
    current_lines: int,
) -> DiffSummary:
    summary = DiffSummary(
        added_lines=sum(1 for d in line_diffs if d.change_type == "added"),
        removed_lines=sum(1 for d in line_diffs if d.change_type == "removed"),
        modified_lines=sum(1 for d in line_diffs if d.change_type == "modified"),
        added_blocks=sum(1 for d in block_diffs if d.change_type == "added"),
        removed_blocks=sum(1 for d in block_diffs if d.change_type == "removed"),
        modified_blocks=sum(1 for d in block_diffs if d.change_type == "modified"),
    )

    baseline = max(previous_lines, current_lines)
    if baseline and summary.total_changes:
        summary.percent_changed = min(100, round(summary.total_changes / baseline * 100))

    parts = []
    if summary.added_lines:
        parts.append(f"+{_plural(summary.added_lines, 'line')}")
    if summary.removed_lines:
        parts.append(f"-{_plural(summary.removed_lines, 'line')}")
    if summary.modified_lines:
        parts.append(f"~{_plural(summary.modified_lines, 'line')}")
    if parts:
        summary.summary = f"{', '.join(parts)} ({summary.percent_changed}% changed)"

    return summary


def compute_diff(
    previous_content: str,
    current_content: str,
    previous_revision: int,
    new_revision: int,
) -> DiffResult:
    """Compute the line- and block-level diff between two revisions.

    Args:
        previous_content: Content of the older revision.
        current_content: Content of the newer revision.
        previous_revision: Revision number of the older content.
        new_revision: Revision number of the newer content.

    Returns:
        DiffResult with line diffs, block diffs and a summary.
    """
    start = time.perf_counter()

    previous_lines = split_lines(previous_content)
    current_lines = split_lines(current_content)

    line_diffs = diff_lines(previous_lines, current_lines)
    block_diffs = diff_blocks(parse_blocks(previous_content), parse_blocks(current_content))
    summary = summarize(line_diffs, block_diffs, len(previous_lines), len(current_lines))

    return DiffResult(
        previous_revision=previous_revision,
        new_revision=new_revision,
        line_diffs=line_diffs,
        block_diffs=block_diffs,
        summary=summary,
        compute_time_ms=round((time.perf_counter() - start) * 1000, 3),
    )


def changed_text(diff: DiffResult) -> str:
    """Text of every added or modified line, newline-joined."""
    return "\n".join(d.content for d in diff.line_diffs if d.change_type != "removed")


def format_diff_for_card(diff: DiffResult) -> str:
    """Plain-text summary of a diff for message cards."""
    lines = [
        f"Changes: revision {diff.previous_revision} -> {diff.new_revision}",
        "",
        f"Summary: {diff.summary.summary}",
        "",
    ]

    if diff.block_diffs:
        markers = {"added": "+", "removed": "-", "modified": "~"}
        lines.append("Block-level changes:")
        for block in diff.block_diffs[:CARD_BLOCK_PREVIEW]:
            preview = block.content[:CARD_PREVIEW_CHARS].replace("\n", " ")
            ellipsis = "..." if len(block.content) > CARD_PREVIEW_CHARS else ""
            lines.append(f"  {markers[block.change_type]} [{block.block_type}] {preview}{ellipsis}")
        if len(diff.block_diffs) > CARD_BLOCK_PREVIEW:
            lines.append(f"  ... and {len(diff.block_diffs) - CARD_BLOCK_PREVIEW} more changes")
        lines.append("")

    if diff.total_changes:
        lines.extend(
            [
                "Line stats:",
                f"  Added: {diff.summary.added_lines}",
                f"  Removed: {diff.summary.removed_lines}",
                f"  Modified: {diff.summary.modified_lines}",
                "",
            ]
        )

    lines.append(f"Computed in {diff.compute_time_ms:.0f}ms")
    return "\n".join(lines)


def format_diff_as_json(diff: DiffResult) -> str:
    return json.dumps(diff.to_dict(), indent=2, ensure_ascii=False)
