# tagheap

`tagheap` runs a `malloc`-style allocator inside a `bytearray`, so you can
look at how it works. It models these parts:

- **Boundary tags.** Every block header holds two 8-byte words: the block's
  size, with its state in the two low bits, and the size of the block to its
  left. When a block is freed, it merges with any free neighbour on either
  side.
- **Fenceposts.** Each chunk taken from the simulated OS is bounded by a
  fencepost at each end.
- **Segregated free lists.** Free blocks sit on circular, doubly linked lists,
  and each list has its own sentinel. The last list holds every block that is
  too large for the others.
- **Chunk growth.** A new chunk is added to the end of the memory only when no
  free block is big enough. If the new chunk lies next to the previous one,
  the two are merged.

A "pointer" is a plain integer offset into the heap memory.

## Installation

```
pip install .
```

To run the tests, install the `test` extra and run pytest:

```
pip install .[test]
pytest
```

## Using the heap

```python
from tagheap.heap import Heap, DoubleFreeError

heap = Heap(arena_size=4096, n_lists=59)   # these are also the defaults

p = heap.malloc(24)           # offset of the usable data
heap.write(p, b"hello")
print(heap.read(p, 5))        # b'hello'

q = heap.calloc(4, 8)         # 32 zeroed bytes
q = heap.realloc(q, 64)       # new block, 64 bytes copied over, old block freed

heap.free(p)
heap.free(q)
assert heap.verify()

try:
    heap.free(p)
except DoubleFreeError:
    print("double free caught")
```

The heap handles these edge cases and errors:

| Call | Result |
| --- | --- |
| `heap.malloc(0)` | returns `None` |
| `heap.free(None)` | does nothing |
| `heap.malloc` with a negative size | raises `ValueError` |
| `heap.free` with a pointer outside the heap | raises `ValueError` |
| `heap.read` or `heap.write` with a range outside the heap | raises `IndexError` |
| `Heap(...)` with an arena size that is not a multiple of 8, or is below 64 | raises `ValueError` |
| `Heap(...)` with fewer than one free list | raises `ValueError` |

The heap serialises `malloc` and `free` with a lock.

`heap.verify()` returns `True` when both of these checks pass:

- the free lists have no cycles and no mislinked pointers;
- in every chunk, each block's size matches the left size of the block to its
  right.

When a check fails, it writes a short message to stderr and returns `False`.

### Inspecting the structures

- **Blocks.** `heap.block(offset)` returns a frozen `Block` snapshot of the
  header at `offset`. It has these fields:
  - `offset`, `size` and `left_size`;
  - `state`, a `State`: `UNALLOCATED`, `ALLOCATED` or `FENCEPOST`;
  - `next` and `prev`, which are filled in for free blocks only;
  - `pointer`, the address of the block's data.
- **Neighbours.**
  - `heap.right_of(block)` returns the next block in memory.
  - `heap.header_of(ptr)` returns the block that owns a data pointer.
- **Free lists.**
  - `heap.freelist(i)` returns the blocks of list `i` in list order.
  - `heap.freelists()` returns every list, indexed by list number. Empty lists
    are included.
  - Sentinels have negative addresses. `heap.is_sentinel(offset)` tells you
    whether an address is a sentinel.
- **Chunks.**
  - `heap.chunks()` returns the offset of the first fencepost of each chunk.
  - `heap.chunk_blocks(start)` yields the blocks of one chunk from left to
    right, fenceposts included.

## Rendering

Each formatter in `tagheap.report` takes `(heap, block)` and returns the text
for that one block:

| Formatter | Output |
| --- | --- |
| `basic_print` | `[size] -> ` |
| `print_list` | `[size]` followed by a newline |
| `print_object` | every header field |
| `print_status` | `[U]`, `[A]` or `[F]` |

These functions apply a formatter to many blocks and return the combined text:

- `print_sublist(heap, formatter, blocks)` renders any run of blocks.
- `freelist_print(heap, formatter)` renders each non-empty list on a line that
  starts with `L<index>: `.
- `tags_print(heap, formatter)` renders every chunk.

```python
from tagheap import report

print(report.freelist_print(heap, report.print_object), end="")
print(report.tags_print(heap, report.print_status))
```

`format_pointer(heap, offset)` renders an address as follows:

- an ordinary address as a zero-padded offset from the heap base;
- a sentinel as `SENTINEL`;
- `None` as `(nil)`.

To colour `print_object` and `print_status` output by block state, set the
environment variable `MALLOC_DEBUG_COLOR=1337_CoLoRs`. `use_color(environ)`
reports whether a given mapping turns colouring on.

## Scenario harness

`tagheap.harness.Harness(heap, out)` runs a heap through a scripted scenario
and writes reports to `out`. If you leave out the arguments, it uses a new
`Heap()` and `sys.stdout`.

- `mallocing_loop(size, n, formatter, silent)` makes `n` zero-filled
  allocations and returns their pointers. `mallocing(size, formatter, silent)`
  makes one allocation.
- `freeing_loop(pointers, size, formatter, silent)` checks that each allocation
  is still zero, then frees it. If an allocation is not all zeros, it writes
  `Memory Corruption Detected` to stderr. `freeing(ptr, size, formatter,
  silent)` does the same for one pointer.
- `initialize_test(name)` writes the test name and the initial free lists and
  tags.
- `finalize_test()` writes the final free lists and tags, and returns the
  result of `verify()`.

When `silent` is false, each step writes a short description followed by the
chunk tags, rendered with `formatter`. Each allocation or freeing step also
runs `verify()`.

```python
import io
from tagheap.heap import Heap
from tagheap.harness import Harness
from tagheap import report

out = io.StringIO()
h = Harness(Heap(4096, 59), out)
h.initialize_test("scenarios/simple")
p = h.mallocing(8, report.print_status, False)
h.freeing(p, 8, report.print_status, False)
ok = h.finalize_test()
print(out.getvalue())
```

## What this package does not do

- `tagheap` only simulates an allocator inside its own `bytearray`. It does
  not replace or hook the memory allocation of the Python process.
- There is no command-line program.
- There is no set of ready-made scenario scripts. You write scenarios yourself
  with `Harness`.