# client/transfer.py
# Chunked file transfer and chat framing over an open direct channel.
#
# Sender:   fileInfo -> fileChunk[0..totalChunks-1] -> fileComplete, one transfer at a time,
#           gated on the channel's backpressure and paced by a minimum delay per chunk.
# Receiver: strict state machine; any gap, overrun or mismatch discards the partial buffer
#           and raises TransferError instead of producing a truncated file.

import asyncio
import logging
import os
from dataclasses import dataclass, field

from client import config
from common.errors import TransferError
from common.frames import FileChunkFrame, FileCompleteFrame, FileInfoFrame, encode_frame

DEFAULT_MIME_TYPE = "application/octet-stream"


def chunk_count(file_size, chunk_size):
    """Number of chunks needed for `file_size` bytes (0 for an empty file)."""
    return -(-file_size // chunk_size)


@dataclass
class ChatEntry:
    sender: str      # 'me' or 'peer'
    text: str
    timestamp: str


@dataclass
class ReceivedFile:
    """A fully reassembled incoming file, ready to be saved."""

    name: str
    mime_type: str
    data: bytes

    @property
    def size(self):
        return len(self.data)

    def save(self, directory=None):
        """
        Writes the file into `directory` (default DOWNLOAD_DIR) and returns the path written.
        The peer-supplied name is reduced to its last path component and never overwrites an existing file.
        """
        directory = directory or config.DOWNLOAD_DIR
        os.makedirs(directory, exist_ok=True)
        base_name = os.path.basename(self.name.replace("\\", "/")) or "download"
        stem, ext = os.path.splitext(base_name)
        path = os.path.join(directory, base_name)
        counter = 1
        while os.path.exists(path):
            path = os.path.join(directory, f"{stem} ({counter}){ext}")
            counter += 1
        with open(path, "wb") as f:
            f.write(self.data)
        return path


@dataclass
class TransferState:
    """Receiver-side bookkeeping for the file currently arriving."""

    file_name: str
    file_size: int
    mime_type: str
    total_chunks: int
    chunks: list = field(default_factory=list)
    next_expected_index: int = 0
    received_bytes: int = 0


class FileReceiver:
    """Reassembles one incoming file at a time from fileInfo / fileChunk / fileComplete frames."""

    def __init__(self, max_file_size=None):
        self.max_file_size = config.MAX_FILE_SIZE_BYTES if max_file_size is None else max_file_size
        self.state = None

    @property
    def active(self):
        return self.state is not None

    def reset(self):
        self.state = None

    def _fail(self, message):
        # Discard everything received so far before reporting.
        self.state = None
        raise TransferError(message)

    def handle_info(self, frame):
        if self.state is not None:
            logging.warning(f"New fileInfo while '{self.state.file_name}' was incomplete; discarding partial data.")
        self.state = None
        if frame.file_size > self.max_file_size:
            self._fail(f"'{frame.file_name}' is {frame.file_size} bytes, above the {self.max_file_size} byte limit.")
        # Every chunk carries at least one byte, and only an empty file has no chunks.
        if (frame.file_size == 0) != (frame.total_chunks == 0) or frame.total_chunks > frame.file_size:
            self._fail(f"'{frame.file_name}' announces {frame.total_chunks} chunks for {frame.file_size} bytes.")
        self.state = TransferState(
            file_name=frame.file_name,
            file_size=frame.file_size,
            mime_type=frame.mime_type,
            total_chunks=frame.total_chunks,
        )
        return self.state

    def handle_chunk(self, frame):
        """
        Appends one chunk.

        Returns:
            tuple[int, int]: (chunks received, total chunks) for progress reporting.

        Raises:
            TransferError: Chunk without fileInfo, index gap, count mismatch or size overrun.
        """
        state = self.state
        if state is None:
            self._fail(f"Chunk {frame.chunk_index} arrived with no transfer in progress.")
        if frame.chunk_index != state.next_expected_index:
            self._fail(f"Expected chunk {state.next_expected_index} of '{state.file_name}' "
                       f"but received chunk {frame.chunk_index}.")
        if frame.total_chunks != state.total_chunks:
            self._fail(f"Chunk {frame.chunk_index} claims {frame.total_chunks} total chunks, "
                       f"fileInfo announced {state.total_chunks}.")
        if frame.chunk_index >= state.total_chunks:
            self._fail(f"Chunk {frame.chunk_index} is beyond the announced {state.total_chunks} chunks.")
        if state.received_bytes + len(frame.data) > state.file_size:
            self._fail(f"'{state.file_name}' received more bytes than the announced {state.file_size}.")
        state.chunks.append(frame.data)
        state.received_bytes += len(frame.data)
        state.next_expected_index += 1
        return len(state.chunks), state.total_chunks

    def handle_complete(self, frame):
        """
        Finalizes the transfer.

        Returns:
            ReceivedFile: The assembled file.

        Raises:
            TransferError: Missing chunks, a different file name, or a size mismatch.
        """
        state = self.state
        if state is None:
            self._fail(f"fileComplete for '{frame.file_name}' arrived with no transfer in progress.")
        if frame.file_name != state.file_name:
            self._fail(f"fileComplete names '{frame.file_name}' but '{state.file_name}' is in progress.")
        if len(state.chunks) != state.total_chunks:
            self._fail(f"'{state.file_name}' completed with {len(state.chunks)} of {state.total_chunks} chunks.")
        data = b"".join(state.chunks)
        if len(data) != state.file_size or frame.file_size != state.file_size:
            self._fail(f"'{state.file_name}' assembled to {len(data)} bytes, expected {state.file_size}.")
        self.state = None
        return ReceivedFile(name=state.file_name, mime_type=frame.mime_type or state.mime_type, data=data)


class FileSender:
    """Streams one file over a channel as fileInfo, ordered fileChunk frames, then fileComplete."""

    def __init__(self, channel, chunk_size=None, pacing=None, on_progress=None):
        self.channel = channel
        self.chunk_size = chunk_size or config.CHUNK_SIZE
        self.pacing = config.CHUNK_PACING_SECONDS if pacing is None else pacing
        # on_progress(sent_chunks, total_chunks), called after each chunk.
        self.on_progress = on_progress

    async def send(self, source, file_name, file_size, mime_type=DEFAULT_MIME_TYPE):
        """
        Sends `file_size` bytes read from the binary file object `source`.

        Raises:
            TransferError: If the source yields fewer bytes than announced.
            ChannelError: If the channel fails mid-transfer.
        """
        total_chunks = chunk_count(file_size, self.chunk_size)
        await self.channel.send(encode_frame(FileInfoFrame(file_name, file_size, mime_type, total_chunks)))

        remaining = file_size
        for index in range(total_chunks):
            data = source.read(min(self.chunk_size, remaining))
            if not data:
                raise TransferError(f"'{file_name}' ended after {file_size - remaining} of {file_size} bytes.")
            remaining -= len(data)
            # Respect the channel's send buffer before queueing more.
            await self.channel.drain()
            await self.channel.send(encode_frame(FileChunkFrame(index, total_chunks, data)))
            if self.on_progress is not None:
                self.on_progress(index + 1, total_chunks)
            await asyncio.sleep(self.pacing)

        if remaining:
            raise TransferError(f"'{file_name}' produced short reads; {remaining} bytes were not sent.")
        await self.channel.send(encode_frame(FileCompleteFrame(file_name, file_size, mime_type)))
        return total_chunks
