"""Scripted allocation and release steps that report the heap's state."""

from __future__ import annotations

import sys
from typing import TextIO

from tagheap.heap import HEADER_SIZE, Heap
from tagheap.report import Formatter, format_pointer, freelist_print, print_object, tags_print

__all__ = ["Harness"]


class Harness:
    """Drives a heap through allocations and frees, writing reports to ``out``."""

    def __init__(self, heap: Heap | None = None, out: TextIO | None = None) -> None:
        self.heap = heap if heap is not None else Heap()
        self.out = out if out is not None else sys.stdout

    def _write(self, text: str) -> None:
        self.out.write(text)

    def _report_state(self, title: str) -> None:
        self._write(f"{title}\n\n")
        self._write("FREELIST\n")
        self._write(freelist_print(self.heap, print_object))
        self._write("TAGS\n")
        self._write(tags_print(self.heap, print_object))

    def initialize_test(self, name: str) -> None:
        """Report the test name and the initial heap state."""
        self._write(f"TEST: {name.rsplit('/', 1)[-1]}\n")
        self._report_state("INTIAL STATE")

    def finalize_test(self) -> bool:
        """Report the final heap state and return whether it verifies."""
        self._report_state("FINAL STATE")
        return self.heap.verify()

    def mallocing_loop(
        self,
        size: int,
        n: int,
        formatter: Formatter | None = print_object,
        silent: bool = False,
    ) -> list[int | None]:
        """Make ``n`` zeroed allocations of ``size`` bytes and return them."""
        if not silent:
            if n == 1:
                self._write(f"mallocing {size} bytes\n")
            else:
                self._write(f"mallocing {size} bytes in {n} allocations\n")
        pointers = [self._malloc_and_clear(size) for _ in range(n)]
        if not silent:
            self._write(tags_print(self.heap, formatter))
            self._write("\n")
        self.heap.verify()
        return pointers

    def mallocing(
        self,
        size: int,
        formatter: Formatter | None = print_object,
        silent: bool = False,
    ) -> int | None:
        """Make one zeroed allocation of ``size`` bytes."""
        return self.mallocing_loop(size, 1, formatter, silent)[0]

    def freeing_loop(
        self,
        pointers: list[int | None],
        size: int,
        formatter: Formatter | None = print_object,
        silent: bool = False,
    ) -> None:
        """Check that each allocation is still zeroed, then free it."""
        if not silent:
            if len(pointers) == 1:
                ptr = pointers[0]
                where = format_pointer(self.heap, None if ptr is None else ptr - HEADER_SIZE)
                self._write(f"freeing {size} bytes ({where})\n")
            else:
                self._write(f"freeing {size} bytes from {len(pointers)} allocations\n")
        for ptr in pointers:
            self._check_and_free(ptr, size)
        if not silent:
            self._write(tags_print(self.heap, formatter))
            self._write("\n")
        self.heap.verify()

    def freeing(
        self,
        ptr: int | None,
        size: int,
        formatter: Formatter | None = print_object,
        silent: bool = False,
    ) -> None:
        """Check and free a single allocation."""
        self.freeing_loop([ptr], size, formatter, silent)

    def _malloc_and_clear(self, size: int) -> int | None:
        ptr = self.heap.malloc(size)
        if ptr is not None:
            self.heap.write(ptr, bytes(size))
        return ptr

    def _check_and_free(self, ptr: int | None, size: int) -> None:
        if ptr is not None and any(self.heap.read(ptr, size)):
            print("Memory Corruption Detected", file=sys.stderr)
        self.heap.free(ptr)