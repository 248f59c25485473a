# services/chunk_planner.py
import math
from typing import Iterable, Iterator, Tuple

from chunked_upload.config import CHUNK_SIZE
from chunked_upload.errors import UploadValidationError


class ChunkPlanner:
    """Splits a file of a known size into fixed-size, 1-indexed parts"""

    def __init__(self, file_size_bytes: int, chunk_size_bytes: int = CHUNK_SIZE):
        if file_size_bytes <= 0:
            raise UploadValidationError("File is empty")
        if chunk_size_bytes <= 0:
            raise UploadValidationError("Chunk size must be positive")
        self.file_size_bytes = file_size_bytes
        self.chunk_size_bytes = chunk_size_bytes
        self.total_parts = math.ceil(file_size_bytes / chunk_size_bytes)

    def byte_range(self, part_number: int) -> Tuple[int, int]:
        """Half-open [start, end) byte range of a part"""
        if not 1 <= part_number <= self.total_parts:
            raise ValueError(f"Part {part_number} is outside 1..{self.total_parts}")
        start = (part_number - 1) * self.chunk_size_bytes
        end = min(part_number * self.chunk_size_bytes, self.file_size_bytes)
        return start, end

    def part_size(self, part_number: int) -> int:
        start, end = self.byte_range(part_number)
        return end - start

    def ranges(self) -> Iterator[Tuple[int, int, int]]:
        for part_number in range(1, self.total_parts + 1):
            start, end = self.byte_range(part_number)
            yield part_number, start, end

    def bytes_for(self, part_numbers: Iterable[int]) -> int:
        return sum(self.part_size(n) for n in part_numbers)
