import asyncio
import io
import os

import pytest

from client.channel import PeerConnection
from client.transfer import FileReceiver, FileSender, ReceivedFile, chunk_count
from common.errors import TransferError
from common.frames import FileChunkFrame, FileCompleteFrame, FileInfoFrame, decode_frame

CHUNK = 16 * 1024


class RecordingChannel(PeerConnection):
    """Collects sent frames and counts how often the sender waited on drain()."""

    def __init__(self):
        super().__init__()
        self.frames = []
        self.drains = 0

    @property
    def remote_description(self):
        return None

    async def create_offer(self):
        return {}

    async def create_answer(self):
        return {}

    async def set_local_description(self, description):
        pass

    async def set_remote_description(self, description):
        pass

    async def add_ice_candidate(self, candidate):
        pass

    async def send(self, text):
        self.frames.append(decode_frame(text))

    async def drain(self):
        self.drains += 1

    async def close(self):
        pass


def send_file(data, name="data.bin", chunk_size=CHUNK, progress=None):
    channel = RecordingChannel()
    sender = FileSender(channel, chunk_size=chunk_size, pacing=0, on_progress=progress)
    total = asyncio.run(sender.send(io.BytesIO(data), name, len(data), "application/octet-stream"))
    return channel, total


def receive(frames, **kwargs):
    receiver = FileReceiver(**kwargs)
    result = None
    for frame in frames:
        if isinstance(frame, FileInfoFrame):
            receiver.handle_info(frame)
        elif isinstance(frame, FileChunkFrame):
            receiver.handle_chunk(frame)
        else:
            result = receiver.handle_complete(frame)
    return result


@pytest.mark.parametrize("size", [0, 1, CHUNK - 1, CHUNK, CHUNK + 1, 3 * 1024 * 1024 + 7])
def test_sender_and_receiver_agree(size):
    data = os.urandom(size)
    channel, total = send_file(data)
    assert total == chunk_count(size, CHUNK)
    assert isinstance(channel.frames[0], FileInfoFrame)
    assert isinstance(channel.frames[-1], FileCompleteFrame)
    chunks = channel.frames[1:-1]
    assert [c.chunk_index for c in chunks] == list(range(total))
    assert all(len(c.data) <= CHUNK for c in chunks)
    assert channel.drains == total
    received = receive(channel.frames)
    assert received.data == data
    assert received.size == size


def test_chunk_count_rounds_up():
    assert chunk_count(0, CHUNK) == 0
    assert chunk_count(1, CHUNK) == 1
    assert chunk_count(CHUNK, CHUNK) == 1
    assert chunk_count(CHUNK + 1, CHUNK) == 2


def test_progress_is_reported_per_chunk():
    seen = []
    send_file(b"x" * (2 * CHUNK + 1), progress=lambda sent, total: seen.append((sent, total)))
    assert seen == [(1, 3), (2, 3), (3, 3)]


def test_short_source_fails_instead_of_sending_truncated_file():
    channel = RecordingChannel()
    sender = FileSender(channel, chunk_size=4, pacing=0)
    with pytest.raises(TransferError):
        asyncio.run(sender.send(io.BytesIO(b"abcdef"), "f.bin", 10))
    assert not any(isinstance(f, FileCompleteFrame) for f in channel.frames)


def test_gap_in_chunk_indices_discards_transfer():
    receiver = FileReceiver()
    receiver.handle_info(FileInfoFrame("f.bin", 40, "application/octet-stream", 4))
    receiver.handle_chunk(FileChunkFrame(0, 4, b"a" * 10))
    receiver.handle_chunk(FileChunkFrame(1, 4, b"b" * 10))
    with pytest.raises(TransferError):
        receiver.handle_chunk(FileChunkFrame(3, 4, b"d" * 10))
    assert not receiver.active
    # The discarded transfer cannot be completed afterwards.
    with pytest.raises(TransferError):
        receiver.handle_complete(FileCompleteFrame("f.bin", 40, "application/octet-stream"))


def test_complete_before_all_chunks_fails():
    receiver = FileReceiver()
    receiver.handle_info(FileInfoFrame("f.bin", 20, "application/octet-stream", 2))
    receiver.handle_chunk(FileChunkFrame(0, 2, b"a" * 10))
    with pytest.raises(TransferError):
        receiver.handle_complete(FileCompleteFrame("f.bin", 20, "application/octet-stream"))
    assert not receiver.active


def test_complete_with_other_name_fails():
    receiver = FileReceiver()
    receiver.handle_info(FileInfoFrame("f.bin", 3, "application/octet-stream", 1))
    receiver.handle_chunk(FileChunkFrame(0, 1, b"abc"))
    with pytest.raises(TransferError):
        receiver.handle_complete(FileCompleteFrame("g.bin", 3, "application/octet-stream"))


def test_size_mismatch_fails():
    receiver = FileReceiver()
    receiver.handle_info(FileInfoFrame("f.bin", 5, "application/octet-stream", 1))
    receiver.handle_chunk(FileChunkFrame(0, 1, b"abc"))
    with pytest.raises(TransferError):
        receiver.handle_complete(FileCompleteFrame("f.bin", 5, "application/octet-stream"))


def test_overrun_and_total_mismatch_fail():
    receiver = FileReceiver()
    receiver.handle_info(FileInfoFrame("f.bin", 4, "application/octet-stream", 2))
    with pytest.raises(TransferError):
        receiver.handle_chunk(FileChunkFrame(0, 2, b"abcde"))
    receiver.handle_info(FileInfoFrame("f.bin", 4, "application/octet-stream", 2))
    with pytest.raises(TransferError):
        receiver.handle_chunk(FileChunkFrame(0, 3, b"ab"))


def test_chunk_without_file_info_fails():
    with pytest.raises(TransferError):
        FileReceiver().handle_chunk(FileChunkFrame(0, 1, b"a"))


def test_new_file_info_resets_partial_buffer():
    receiver = FileReceiver()
    receiver.handle_info(FileInfoFrame("old.bin", 20, "application/octet-stream", 2))
    receiver.handle_chunk(FileChunkFrame(0, 2, b"a" * 10))
    receiver.handle_info(FileInfoFrame("new.bin", 2, "text/plain", 1))
    receiver.handle_chunk(FileChunkFrame(0, 1, b"hi"))
    received = receiver.handle_complete(FileCompleteFrame("new.bin", 2, "text/plain"))
    assert received == ReceivedFile("new.bin", "text/plain", b"hi")


def test_file_over_size_limit_is_refused():
    receiver = FileReceiver(max_file_size=100)
    with pytest.raises(TransferError):
        receiver.handle_info(FileInfoFrame("big.bin", 101, "application/octet-stream", 1))
    assert not receiver.active


def test_inconsistent_chunk_count_is_refused():
    with pytest.raises(TransferError):
        FileReceiver().handle_info(FileInfoFrame("f.bin", 0, "application/octet-stream", 1))
    with pytest.raises(TransferError):
        FileReceiver().handle_info(FileInfoFrame("f.bin", 3, "application/octet-stream", 0))


def test_save_strips_directories_and_never_overwrites(tmp_path):
    received = ReceivedFile("../../etc/passwd", "text/plain", b"data")
    first = received.save(str(tmp_path))
    second = received.save(str(tmp_path))
    assert os.path.dirname(first) == str(tmp_path)
    assert os.path.basename(first) == "passwd"
    assert os.path.basename(second) == "passwd (1)"
    with open(first, "rb") as f:
        assert f.read() == b"data"


def test_save_handles_windows_style_names(tmp_path):
    path = ReceivedFile("C:\\Users\\me\\report.pdf", "application/pdf", b"%PDF").save(str(tmp_path))
    assert os.path.basename(path) == "report.pdf"
