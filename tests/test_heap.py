import itertools

import pytest

from tagheap.heap import (
    ALLOC_HEADER_SIZE,
    ARENA_SIZE,
    HEADER_SIZE,
    N_LISTS,
    Block,
    DoubleFreeError,
    Heap,
    State,
)


def boundary_tags_consistent(heap):
    for start in heap.chunks():
        blocks = list(heap.chunk_blocks(start))
        for left, right in zip(blocks, blocks[1:]):
            if left.offset + left.size != right.offset:
                return False
            if right.left_size != left.size:
                return False
    return True


def test_initial_state_has_single_free_block():
    heap = Heap()
    lists = heap.freelists()
    assert len(lists) == N_LISTS
    assert all(not blocks for blocks in lists[:-1])
    (block,) = lists[-1]
    assert block.offset == ALLOC_HEADER_SIZE
    assert block.size == ARENA_SIZE - 2 * ALLOC_HEADER_SIZE
    assert block.state is State.UNALLOCATED
    assert heap.chunks() == [0]
    assert heap.verify() is True


def test_initial_block_links_to_sentinel():
    heap = Heap()
    (block,) = heap.freelist(N_LISTS - 1)
    assert heap.is_sentinel(block.next)
    assert heap.is_sentinel(block.prev)
    assert not heap.is_sentinel(0)
    assert heap.block(block.next).size == 0


def test_chunk_is_bracketed_by_fenceposts():
    heap = Heap()
    blocks = list(heap.chunk_blocks(0))
    assert blocks[0].state is State.FENCEPOST
    assert blocks[-1].state is State.FENCEPOST
    assert blocks[0].size == ALLOC_HEADER_SIZE
    assert blocks[-1].offset + blocks[-1].size == ARENA_SIZE


def test_zero_sized_requests_return_none():
    heap = Heap()
    assert heap.malloc(0) is None
    assert heap.calloc(0, 8) is None
    assert heap.calloc(8, 0) is None


def test_negative_size_is_rejected():
    heap = Heap()
    with pytest.raises(ValueError):
        heap.malloc(-1)


@pytest.mark.parametrize("size", [1, 7, 8, 9, 24, 100, 1000])
def test_malloc_returns_aligned_allocated_block(size):
    heap = Heap()
    ptr = heap.malloc(size)
    header = heap.header_of(ptr)
    assert header.state is State.ALLOCATED
    assert header.pointer == ptr
    assert header.size % 8 == 0
    assert header.size >= max(size + ALLOC_HEADER_SIZE, HEADER_SIZE)
    assert header.next is None and header.prev is None
    assert heap.verify() is True
    assert boundary_tags_consistent(heap)


def test_allocation_is_carved_from_the_right_end():
    heap = Heap()
    ptr = heap.malloc(8)
    right = heap.right_of(heap.header_of(ptr))
    assert right.state is State.FENCEPOST
    assert right.offset + right.size == ARENA_SIZE


def test_write_read_round_trip():
    heap = Heap()
    ptr = heap.malloc(64)
    payload = bytes(range(64))
    heap.write(ptr, payload)
    assert heap.read(ptr, 64) == payload


def test_access_outside_heap_raises():
    heap = Heap()
    with pytest.raises(IndexError):
        heap.read(ARENA_SIZE - 4, 8)
    with pytest.raises(IndexError):
        heap.write(-1, b"x")


def test_free_restores_initial_layout():
    heap = Heap()
    before = heap.freelists()
    ptr = heap.malloc(200)
    heap.free(ptr)
    assert heap.freelists() == before
    assert heap.verify() is True


def test_free_none_changes_nothing():
    heap = Heap()
    before = heap.freelists()
    heap.free(None)
    assert heap.freelists() == before


def test_double_free_raises():
    heap = Heap()
    first = heap.malloc(8)
    heap.malloc(8)
    heap.free(first)
    with pytest.raises(DoubleFreeError):
        heap.free(first)


def test_free_of_foreign_pointer_raises():
    heap = Heap()
    with pytest.raises(ValueError):
        heap.free(ARENA_SIZE * 10)


@pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
def test_coalescing_in_any_order_restores_single_block(order):
    heap = Heap()
    before = [block.size for block in heap.freelist(N_LISTS - 1)]
    pointers = [heap.malloc(8) for _ in range(3)]
    for index in order:
        heap.free(pointers[index])
        assert heap.verify() is True
        assert boundary_tags_consistent(heap)
    assert [block.size for block in heap.freelist(N_LISTS - 1)] == before
    assert all(not blocks for blocks in heap.freelists()[:-1])


def test_calloc_zeroes_reused_memory():
    heap = Heap()
    ptr = heap.malloc(48)
    heap.write(ptr, b"\xff" * 48)
    heap.free(ptr)
    again = heap.calloc(6, 8)
    assert heap.read(again, 48) == bytes(48)


def test_realloc_copies_data_and_frees_old_block():
    heap = Heap()
    old = heap.malloc(16)
    heap.write(old, b"abcdefghijklmnop")
    new = heap.realloc(old, 16)
    assert new != old
    assert heap.read(new, 16) == b"abcdefghijklmnop"
    with pytest.raises(DoubleFreeError):
        heap.free(old)
    assert heap.verify() is True


def test_realloc_of_none_allocates():
    heap = Heap()
    ptr = heap.realloc(None, 32)
    assert heap.header_of(ptr).state is State.ALLOCATED


@pytest.mark.parametrize("size", [ARENA_SIZE, 3 * ARENA_SIZE])
def test_large_request_grows_heap_contiguously(size):
    heap = Heap()
    ptr = heap.malloc(size)
    header = heap.header_of(ptr)
    assert header.size >= size + ALLOC_HEADER_SIZE
    assert heap.chunks() == [0]
    assert heap.verify() is True
    assert boundary_tags_consistent(heap)
    heap.write(ptr, b"\x01" * size)
    assert heap.read(ptr, size) == b"\x01" * size


def test_growth_after_full_heap_keeps_tags_consistent():
    heap = Heap()
    pointers = [heap.malloc(1000) for _ in range(10)]
    assert len(set(pointers)) == 10
    assert heap.verify() is True
    assert boundary_tags_consistent(heap)
    for ptr in pointers:
        heap.free(ptr)
    assert heap.verify() is True
    assert boundary_tags_consistent(heap)
    free_blocks = [block for blocks in heap.freelists() for block in blocks]
    assert all(block.state is State.UNALLOCATED for block in free_blocks)


def test_verify_detects_overwritten_boundary_tag():
    heap = Heap()
    ptr = heap.malloc(8)
    heap.write(ptr, bytes(HEADER_SIZE))
    assert heap.verify() is False


def test_block_snapshot_is_frozen():
    heap = Heap()
    block = heap.block(0)
    assert isinstance(block, Block)
    assert block.state is State.FENCEPOST
    with pytest.raises(AttributeError):
        block.size = 0


def test_freelist_index_out_of_range():
    heap = Heap()
    with pytest.raises(IndexError):
        heap.freelist(N_LISTS)


@pytest.mark.parametrize("arena_size, n_lists", [(32, 59), (4100, 59), (4096, 0)])
def test_invalid_configuration_is_rejected(arena_size, n_lists):
    with pytest.raises(ValueError):
        Heap(arena_size, n_lists)


def test_small_configuration_works():
    heap = Heap(256, 4)
    pointers = [heap.malloc(16) for _ in range(20)]
    assert heap.verify() is True
    for ptr in reversed(pointers):
        heap.free(ptr)
    assert heap.verify() is True
    assert boundary_tags_consistent(heap)