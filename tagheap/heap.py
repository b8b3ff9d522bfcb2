"""Boundary-tag heap allocator over a simulated, growable memory.

Every block starts with a header made of two 8-byte words: the block size
with the allocation state in its two low bits, and the size of the block to
its left.  Free blocks also store the addresses of their neighbours in a
segregated, circular, doubly linked free list in the 16 bytes that follow the
header; allocated blocks hand those bytes to the user.  Each chunk taken
from the "operating system" is bracketed by two fenceposts so that
coalescing never runs off its edges.
"""

from __future__ import annotations

import struct
import sys
import threading
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator

ALLOC_HEADER_SIZE = 16
HEADER_SIZE = 32
MIN_ALLOCATION = 8
ARENA_SIZE = 4096
N_LISTS = 59
MAX_OS_CHUNKS = 1024
RELATIVE_POINTERS = True

_STATE_MASK = 0x3
_NULL = -(1 << 63)
_WORD = struct.Struct("<Q")
_LINK = struct.Struct("<q")
_SIZE_FIELD = 0
_LEFT_FIELD = 8
_NEXT_FIELD = 16
_PREV_FIELD = 24


class State(IntEnum):
    """Allocation state kept in the low bits of a block's size word."""

    UNALLOCATED = 0
    ALLOCATED = 1
    FENCEPOST = 2


class DoubleFreeError(RuntimeError):
    """Raised when a block that is already free is freed again."""


@dataclass(frozen=True)
class Block:
    """Snapshot of one block header.

    ``next`` and ``prev`` are only filled in for free blocks, where they
    hold the addresses of the neighbours in the free list.
    """

    offset: int
    size: int
    left_size: int
    state: State
    next: int | None = None
    prev: int | None = None

    @property
    def pointer(self) -> int:
        """Address of the block's user data."""
        return self.offset + ALLOC_HEADER_SIZE


class Heap:
    """A segregated free-list allocator with boundary tags."""

    def __init__(self, arena_size: int = ARENA_SIZE, n_lists: int = N_LISTS) -> None:
        if arena_size < 4 * ALLOC_HEADER_SIZE or arena_size % 8:
            raise ValueError("arena size must be a multiple of 8 and at least 64")
        if n_lists < 1:
            raise ValueError("at least one free list is required")
        self.arena_size = arena_size
        self.n_lists = n_lists
        self.base = 0
        self._memory = bytearray()
        self._sentinels = [[addr, addr] for addr in map(self._sentinel, range(n_lists))]
        self._chunks: list[int] = []
        self._lock = threading.Lock()

        block = self._allocate_chunk(arena_size)
        self._insert_chunk(block - ALLOC_HEADER_SIZE)
        self._last_fencepost = block + self._size(block)
        self._prepend(n_lists - 1, block)

    # ------------------------------------------------------------------
    # Public allocation interface
    # ------------------------------------------------------------------

    def malloc(self, size: int) -> int | None:
        """Allocate ``size`` bytes; return the data address, or None for 0."""
        if size < 0:
            raise ValueError("allocation size cannot be negative")
        with self._lock:
            return self._allocate_object(size)

    def calloc(self, nmemb: int, size: int) -> int | None:
        """Allocate ``nmemb * size`` zeroed bytes."""
        total = nmemb * size
        ptr = self.malloc(total)
        if ptr is not None:
            self._memory[ptr : ptr + total] = bytes(total)
        return ptr

    def realloc(self, ptr: int | None, size: int) -> int | None:
        """Allocate a new block, copy ``size`` bytes from ``ptr`` and free it."""
        mem = self.malloc(size)
        if ptr is not None:
            if mem is not None:
                data = bytes(self._memory[ptr : ptr + size])
                self._memory[mem : mem + len(data)] = data
            self.free(ptr)
        return mem

    def free(self, ptr: int | None) -> None:
        """Release the block whose data starts at ``ptr``."""
        with self._lock:
            self._deallocate_object(ptr)

    def verify(self) -> bool:
        """Check the free lists and the boundary tags for consistency."""
        return self._verify_freelist() and self._verify_tags()

    # ------------------------------------------------------------------
    # Memory access and inspection
    # ------------------------------------------------------------------

    def read(self, ptr: int, size: int) -> bytes:
        """Return ``size`` bytes of heap memory starting at ``ptr``."""
        self._check_range(ptr, size)
        return bytes(self._memory[ptr : ptr + size])

    def write(self, ptr: int, data: bytes) -> None:
        """Store ``data`` in heap memory starting at ``ptr``."""
        self._check_range(ptr, len(data))
        self._memory[ptr : ptr + len(data)] = data

    def block(self, offset: int) -> Block:
        """Return a snapshot of the header at ``offset`` (or of a sentinel)."""
        if self.is_sentinel(offset):
            nxt, prev = self._sentinels[-offset - 1]
            return Block(offset, 0, 0, State.UNALLOCATED, _link(nxt), _link(prev))
        self._check_range(offset, ALLOC_HEADER_SIZE)
        state = self._state(offset)
        nxt = prev = None
        if state is State.UNALLOCATED and offset + HEADER_SIZE <= len(self._memory):
            nxt = _link(self._next(offset))
            prev = _link(self._prev(offset))
        return Block(offset, self._size(offset), self._left_size(offset), state, nxt, prev)

    def right_of(self, block: Block) -> Block:
        """Return the block just to the right of ``block`` in memory."""
        return self.block(block.offset + block.size)

    def header_of(self, ptr: int) -> Block:
        """Return the header of the block whose data starts at ``ptr``."""
        return self.block(ptr - ALLOC_HEADER_SIZE)

    def is_sentinel(self, offset: int | None) -> bool:
        """Tell whether ``offset`` is the address of a free-list sentinel."""
        return offset is not None and -self.n_lists <= offset < 0

    def freelist(self, index: int) -> list[Block]:
        """Return the blocks of free list ``index`` in list order."""
        if not 0 <= index < self.n_lists:
            raise IndexError(f"free list index {index} out of range")
        sentinel = self._sentinel(index)
        blocks = []
        cur = self._next(sentinel)
        while cur != sentinel:
            blocks.append(self.block(cur))
            cur = self._next(cur)
        return blocks

    def freelists(self) -> list[list[Block]]:
        """Return every free list, indexed by list number."""
        return [self.freelist(i) for i in range(self.n_lists)]

    def chunks(self) -> list[int]:
        """Return the offsets of the first fencepost of each recorded chunk."""
        return list(self._chunks)

    def chunk_blocks(self, start: int) -> Iterator[Block]:
        """Yield the blocks of a chunk, fenceposts included, left to right."""
        yield self.block(start)
        cur = self._right(start)
        while self._state(cur) is not State.FENCEPOST:
            yield self.block(cur)
            cur = self._right(cur)
        yield self.block(cur)

    # ------------------------------------------------------------------
    # Header field access
    # ------------------------------------------------------------------

    def _sentinel(self, index: int) -> int:
        return -(index + 1)

    def _check_range(self, offset: int, size: int) -> None:
        if offset < 0 or size < 0 or offset + size > len(self._memory):
            raise IndexError(f"address range {offset}+{size} lies outside the heap")

    def _word(self, addr: int) -> int:
        return _WORD.unpack_from(self._memory, addr + _SIZE_FIELD)[0]

    def _size(self, addr: int) -> int:
        if self.is_sentinel(addr):
            return 0
        return self._word(addr) & ~_STATE_MASK

    def _state(self, addr: int) -> State:
        if self.is_sentinel(addr):
            return State.UNALLOCATED
        return State(self._word(addr) & _STATE_MASK)

    def _set_size(self, addr: int, size: int) -> None:
        word = size | (self._word(addr) & _STATE_MASK)
        _WORD.pack_into(self._memory, addr + _SIZE_FIELD, word)

    def _set_state(self, addr: int, state: State) -> None:
        word = (self._word(addr) & ~_STATE_MASK) | state
        _WORD.pack_into(self._memory, addr + _SIZE_FIELD, word)

    def _left_size(self, addr: int) -> int:
        return _WORD.unpack_from(self._memory, addr + _LEFT_FIELD)[0]

    def _set_left_size(self, addr: int, size: int) -> None:
        _WORD.pack_into(self._memory, addr + _LEFT_FIELD, size)

    def _next(self, addr: int) -> int:
        if self.is_sentinel(addr):
            return self._sentinels[-addr - 1][0]
        return _LINK.unpack_from(self._memory, addr + _NEXT_FIELD)[0]

    def _prev(self, addr: int) -> int:
        if self.is_sentinel(addr):
            return self._sentinels[-addr - 1][1]
        return _LINK.unpack_from(self._memory, addr + _PREV_FIELD)[0]

    def _set_next(self, addr: int, target: int) -> None:
        if self.is_sentinel(addr):
            self._sentinels[-addr - 1][0] = target
        else:
            _LINK.pack_into(self._memory, addr + _NEXT_FIELD, target)

    def _set_prev(self, addr: int, target: int) -> None:
        if self.is_sentinel(addr):
            self._sentinels[-addr - 1][1] = target
        else:
            _LINK.pack_into(self._memory, addr + _PREV_FIELD, target)

    def _right(self, addr: int) -> int:
        return addr + self._size(addr)

    def _left(self, addr: int) -> int:
        return addr - self._left_size(addr)

    # ------------------------------------------------------------------
    # Chunks from the operating system
    # ------------------------------------------------------------------

    def _insert_chunk(self, fencepost: int) -> None:
        if len(self._chunks) < MAX_OS_CHUNKS:
            self._chunks.append(fencepost)

    def _init_fencepost(self, addr: int, left_size: int) -> None:
        self._set_state(addr, State.FENCEPOST)
        self._set_size(addr, ALLOC_HEADER_SIZE)
        self._set_left_size(addr, left_size)

    def _allocate_chunk(self, size: int) -> int:
        mem = len(self._memory)
        self._memory.extend(bytes(size))
        self._init_fencepost(mem, ALLOC_HEADER_SIZE)
        self._init_fencepost(mem + size - ALLOC_HEADER_SIZE, size - 2 * ALLOC_HEADER_SIZE)
        block = mem + ALLOC_HEADER_SIZE
        self._set_state(block, State.UNALLOCATED)
        self._set_size(block, size - 2 * ALLOC_HEADER_SIZE)
        self._set_left_size(block, ALLOC_HEADER_SIZE)
        return block

    def _grow(self) -> None:
        last = self.n_lists - 1
        new_chunk = self._allocate_chunk(self.arena_size)
        left_fencepost = self._left(new_chunk)

        if self._left(left_fencepost) != self._last_fencepost:
            self._insert_chunk(left_fencepost)
            self._prepend(last, new_chunk)
            self._last_fencepost = self._right(new_chunk)
            return

        last_block = self._left(self._last_fencepost)
        if self._state(last_block) is State.ALLOCATED:
            merged = self._last_fencepost
            self._set_state(merged, State.UNALLOCATED)
            self._set_size(merged, 2 * self._size(merged) + self._size(new_chunk))
            self._set_left_size(self._right(new_chunk), self._size(merged))
            self._prepend(last, merged)
        else:
            old_index = self._index(self._size(last_block))
            grown = self._size(last_block) + 2 * self._size(self._last_fencepost)
            self._set_size(last_block, grown + self._size(new_chunk))
            self._set_left_size(self._right(new_chunk), self._size(last_block))
            new_index = self._index(self._size(last_block))
            if new_index != old_index:
                self._remove(last_block)
                self._prepend(new_index, last_block)
        self._last_fencepost = self._right(new_chunk)

    # ------------------------------------------------------------------
    # Free lists
    # ------------------------------------------------------------------

    def _index(self, actual_size: int) -> int:
        index = (actual_size - ALLOC_HEADER_SIZE) // 8 - 1
        return index if 0 <= index <= self.n_lists - 1 else self.n_lists - 1

    def _prepend(self, index: int, addr: int) -> None:
        sentinel = self._sentinel(index)
        nxt = self._next(sentinel)
        self._set_next(sentinel, addr)
        self._set_prev(addr, sentinel)
        self._set_prev(nxt, addr)
        self._set_next(addr, nxt)

    def _remove(self, addr: int) -> None:
        nxt, prev = self._next(addr), self._prev(addr)
        self._set_next(prev, nxt)
        self._set_prev(nxt, prev)
        self._set_prev(addr, _NULL)
        self._set_next(addr, _NULL)

    def _search(self, index: int, actual_size: int) -> int | None:
        sentinel = self._sentinel(index)
        if index < self.n_lists - 1:
            return self._next(sentinel)
        current = self._next(sentinel)
        while self._size(current) < actual_size:
            current = self._next(current)
            if current == sentinel:
                return None
        return current

    def _find(self, actual_size: int) -> int | None:
        for index in range(self._index(actual_size), self.n_lists):
            block = self._search(index, actual_size)
            if block is None or block != self._next(block):
                return block
        return None

    # ------------------------------------------------------------------
    # Allocation and deallocation
    # ------------------------------------------------------------------

    def _allocate_object(self, raw_size: int) -> int | None:
        if raw_size == 0:
            return None
        rounded = (raw_size + 7) & ~7
        actual = max(ALLOC_HEADER_SIZE + rounded, HEADER_SIZE)

        block = self._find(actual)
        while block is None:
            self._grow()
            block = self._find(actual)

        size = self._size(block)
        if size == actual or (size > actual and size - actual <= ALLOC_HEADER_SIZE):
            self._remove(block)
            self._set_state(block, State.ALLOCATED)
            return block + ALLOC_HEADER_SIZE

        remainder = size - actual
        split = block + remainder
        self._set_size(split, actual)
        self._set_state(split, State.ALLOCATED)
        self._set_left_size(split, remainder)
        self._set_left_size(self._right(split), self._size(split))
        self._set_size(block, remainder)

        new_index = self._index(self._size(block))
        if new_index < self.n_lists - 1:
            self._remove(block)
            self._prepend(new_index, block)
        return split + ALLOC_HEADER_SIZE

    def _deallocate_object(self, ptr: int | None) -> None:
        if ptr is None:
            return
        block = ptr - ALLOC_HEADER_SIZE
        if block < ALLOC_HEADER_SIZE or ptr + ALLOC_HEADER_SIZE > len(self._memory):
            raise ValueError(f"pointer {ptr} does not belong to the heap")
        actual = self._size(block)
        if self._state(block) is State.UNALLOCATED:
            raise DoubleFreeError(f"block at {block} is already free")

        last = self.n_lists - 1
        left = self._left(block)
        right = self._right(block)
        right_index = self._index(self._size(right))
        left_index = self._index(self._size(left))
        left_free = self._state(left) is State.UNALLOCATED
        right_free = self._state(right) is State.UNALLOCATED

        if left_free and right_free:
            self._set_state(block, State.UNALLOCATED)
            new_size = self._size(left) + actual + self._size(right)
            self._set_size(left, new_size)
            self._set_left_size(self._right(right), new_size)
            self._remove(right)
            if left_index != last:
                self._remove(left)
                self._prepend(self._index(new_size), left)
        elif right_free:
            new_size = actual + self._size(right)
            self._set_state(block, State.UNALLOCATED)
            self._set_size(block, new_size)
            self._set_left_size(self._right(right), new_size)
            nxt, prev = self._next(right), self._prev(right)
            self._set_prev(nxt, block)
            self._set_next(prev, block)
            self._set_next(block, nxt)
            self._set_prev(block, prev)
            if right_index != last:
                self._remove(block)
                self._prepend(self._index(new_size), block)
        elif left_free:
            new_size = self._size(left) + actual
            self._set_state(block, State.UNALLOCATED)
            self._set_size(left, new_size)
            self._set_left_size(right, new_size)
            if left_index != last:
                self._remove(left)
                self._prepend(self._index(new_size), left)
        else:
            self._set_state(block, State.UNALLOCATED)
            self._prepend(self._index(actual), block)

    # ------------------------------------------------------------------
    # Consistency checks
    # ------------------------------------------------------------------

    def _detect_cycles(self) -> int | None:
        for index in range(self.n_lists):
            sentinel = self._sentinel(index)
            slow = self._next(sentinel)
            fast = self._next(slow)
            while fast != sentinel:
                if slow == fast:
                    return slow
                slow = self._next(slow)
                fast = self._next(self._next(fast))
        return None

    def _verify_pointers(self) -> int | None:
        for index in range(self.n_lists):
            sentinel = self._sentinel(index)
            cur = self._next(sentinel)
            while cur != sentinel:
                if self._prev(self._next(cur)) != cur or self._next(self._prev(cur)) != cur:
                    return cur
                cur = self._next(cur)
        return None

    def _verify_freelist(self) -> bool:
        if self._detect_cycles() is not None:
            print("Cycle Detected", file=sys.stderr)
            return False
        if self._verify_pointers() is not None:
            print("Invalid pointers", file=sys.stderr)
            return False
        return True

    def _verify_chunk(self, start: int) -> int | None:
        if self._state(start) is not State.FENCEPOST:
            print("Invalid fencepost", file=sys.stderr)
            return start
        cur = self._right(start)
        while self._state(cur) is not State.FENCEPOST:
            right = self._right(cur)
            if (
                right + ALLOC_HEADER_SIZE > len(self._memory)
                or self._size(cur) != self._left_size(right)
            ):
                print("Invalid sizes", file=sys.stderr)
                return cur
            cur = right
        return None

    def _verify_tags(self) -> bool:
        return all(self._verify_chunk(start) is None for start in self._chunks)


def _link(value: int) -> int | None:
    return None if value == _NULL else value