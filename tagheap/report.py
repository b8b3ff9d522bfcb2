"""Text renderings of heap blocks, free lists and boundary tags.

A formatter takes a heap and a block and returns the text for that block.
The list and tag renderers apply a formatter to many blocks and return the
combined text.
"""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from typing import Callable

from tagheap.heap import HEADER_SIZE, Block, Heap, State

MALLOC_COLOR = "MALLOC_DEBUG_COLOR"
COLOR_KEY = "1337_CoLoRs"

_COLORS = {
    State.UNALLOCATED: "\033[0;32m",
    State.ALLOCATED: "\033[0;34m",
    State.FENCEPOST: "\033[0;33m",
}
_CLEAR = "\033[0;0m"
_ALLOCATED_TEXT = {
    State.UNALLOCATED: "false",
    State.ALLOCATED: "true",
    State.FENCEPOST: "fencepost",
}
_STATUS_TEXT = {
    State.UNALLOCATED: "[U]",
    State.ALLOCATED: "[A]",
    State.FENCEPOST: "[F]",
}

Formatter = Callable[[Heap, Block], str]

__all__ = [
    "HEADER_SIZE",
    "Formatter",
    "use_color",
    "format_pointer",
    "basic_print",
    "print_list",
    "print_object",
    "print_status",
    "print_sublist",
    "freelist_print",
    "tags_print",
]


def use_color(environ: Mapping[str, str]) -> bool:
    """Tell whether coloured output is switched on in ``environ``."""
    return environ.get(MALLOC_COLOR) == COLOR_KEY


def _colored(block: Block, text: str) -> str:
    if not use_color(os.environ):
        return text
    return f"{_COLORS[block.state]}{text}{_CLEAR}"


def format_pointer(heap: Heap, offset: int | None) -> str:
    """Render an address relative to the heap base, or SENTINEL."""
    if offset is None:
        return "(nil)"
    if heap.is_sentinel(offset):
        return "SENTINEL"
    return "%04d" % (offset - heap.base)


def basic_print(heap: Heap, block: Block) -> str:
    """Render just the block's size as a list element."""
    return f"[{block.size}] -> "


def print_list(heap: Heap, block: Block) -> str:
    """Render just the block's size on its own line."""
    return f"[{block.size}]\n"


def print_object(heap: Heap, block: Block) -> str:
    """Render every metadata field of a block."""
    lines = [
        "[",
        f"\taddr: {format_pointer(heap, block.offset)}",
        f"\tsize: {block.size}",
        f"\tleft_size: {block.left_size}",
        f"\tallocated: {_ALLOCATED_TEXT[block.state]}",
    ]
    if block.state is State.UNALLOCATED:
        lines.append(f"\tprev: {format_pointer(heap, block.prev)}")
        lines.append(f"\tnext: {format_pointer(heap, block.next)}")
    lines.append("]")
    return _colored(block, "\n".join(lines) + "\n")


def print_status(heap: Heap, block: Block) -> str:
    """Render only the allocation status of a block."""
    return _colored(block, _STATUS_TEXT[block.state])


def print_sublist(heap: Heap, formatter: Formatter, blocks: Iterable[Block]) -> str:
    """Render a run of blocks with ``formatter``."""
    return "".join(formatter(heap, block) for block in blocks)


def freelist_print(heap: Heap, formatter: Formatter | None) -> str:
    """Render every non-empty free list, one line per list."""
    if formatter is None:
        return ""
    parts = []
    for index, blocks in enumerate(heap.freelists()):
        if blocks:
            parts.append(f"L{index}: {print_sublist(heap, formatter, blocks)}\n")
    return "".join(parts)


def tags_print(heap: Heap, formatter: Formatter | None) -> str:
    """Render the boundary tags of every chunk, fenceposts included."""
    if formatter is None:
        return ""
    return "".join(
        print_sublist(heap, formatter, heap.chunk_blocks(start)) for start in heap.chunks()
    )