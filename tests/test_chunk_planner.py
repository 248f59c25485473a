import pytest

from chunked_upload.config import CHUNK_SIZE, MiB
from chunked_upload.errors import UploadValidationError
from chunked_upload.services.chunk_planner import ChunkPlanner


@pytest.mark.parametrize(
    "file_size, expected_parts",
    [
        (1, 1),
        (CHUNK_SIZE - 1, 1),
        (CHUNK_SIZE, 1),
        (CHUNK_SIZE + 1, 2),
        (25 * MiB, 3),
        (2 * 1024 * MiB, 205),
    ],
)
def test_total_parts_is_ceiling(file_size, expected_parts):
    assert ChunkPlanner(file_size).total_parts == expected_parts


@pytest.mark.parametrize("file_size, chunk_size", [(1, 1), (10, 3), (25 * MiB, 10 * MiB), (4096, 1024), (4097, 1024)])
def test_ranges_cover_file_without_gaps(file_size, chunk_size):
    planner = ChunkPlanner(file_size, chunk_size)

    offset = 0
    for part_number, start, end in planner.ranges():
        assert start == offset
        assert 0 < end - start <= chunk_size
        offset = end
    assert offset == file_size
    assert planner.bytes_for(range(1, planner.total_parts + 1)) == file_size


def test_last_part_is_short():
    planner = ChunkPlanner(25 * MiB)

    assert planner.byte_range(1) == (0, 10 * MiB)
    assert planner.byte_range(3) == (20 * MiB, 25 * MiB)
    assert planner.part_size(3) == 5 * MiB


@pytest.mark.parametrize("file_size", [0, -1])
def test_rejects_empty_files(file_size):
    with pytest.raises(UploadValidationError):
        ChunkPlanner(file_size)


@pytest.mark.parametrize("part_number", [0, 4])
def test_rejects_out_of_range_parts(part_number):
    with pytest.raises(ValueError):
        ChunkPlanner(25 * MiB).byte_range(part_number)
