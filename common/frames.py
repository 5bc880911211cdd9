# common/frames.py
# Application frames exchanged over the direct channel once a session is connected.
# Frames are JSON objects tagged by "type"; field names match the browser client
# so both implementations can talk to each other.

import enum
import json
from dataclasses import dataclass

from common.errors import ProtocolError


class FrameType(str, enum.Enum):
    CHAT = "chat"
    FILE_INFO = "fileInfo"
    FILE_CHUNK = "fileChunk"
    FILE_COMPLETE = "fileComplete"


@dataclass(frozen=True)
class ChatFrame:
    text: str
    timestamp: str

    frame_type = FrameType.CHAT

    def to_dict(self):
        return {"type": self.frame_type.value, "text": self.text, "timestamp": self.timestamp}


@dataclass(frozen=True)
class FileInfoFrame:
    file_name: str
    file_size: int
    mime_type: str
    total_chunks: int

    frame_type = FrameType.FILE_INFO

    def to_dict(self):
        return {
            "type": self.frame_type.value,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
            "totalChunks": self.total_chunks,
        }


@dataclass(frozen=True)
class FileChunkFrame:
    chunk_index: int
    total_chunks: int
    data: bytes

    frame_type = FrameType.FILE_CHUNK

    def to_dict(self):
        # Bytes travel as a plain array of integers, the same representation the browser uses.
        return {
            "type": self.frame_type.value,
            "chunkIndex": self.chunk_index,
            "totalChunks": self.total_chunks,
            "bytes": list(self.data),
        }


@dataclass(frozen=True)
class FileCompleteFrame:
    file_name: str
    file_size: int
    mime_type: str

    frame_type = FrameType.FILE_COMPLETE

    def to_dict(self):
        return {
            "type": self.frame_type.value,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "mimeType": self.mime_type,
        }


def encode_frame(frame):
    """Serializes a frame dataclass to the JSON text sent over the channel."""
    return json.dumps(frame.to_dict(), separators=(",", ":"))


# --- Field Helpers ---
def _require_str(data, key):
    value = data.get(key)
    if not isinstance(value, str):
        raise ProtocolError(f"Frame field '{key}' must be a string", code="INVALID_FRAME")
    return value


def _require_count(data, key):
    value = data.get(key)
    # bool is a subclass of int and never a valid count.
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ProtocolError(f"Frame field '{key}' must be a non-negative integer", code="INVALID_FRAME")
    return value


def _require_bytes(data, key):
    value = data.get(key)
    if not isinstance(value, list):
        raise ProtocolError(f"Frame field '{key}' must be a byte array", code="INVALID_FRAME")
    try:
        return bytes(value)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Frame field '{key}' holds values outside 0-255", code="INVALID_FRAME") from e


def _chat_from_dict(data):
    return ChatFrame(text=_require_str(data, "text"), timestamp=data.get("timestamp") or "")


def _file_info_from_dict(data):
    return FileInfoFrame(
        file_name=_require_str(data, "fileName"),
        file_size=_require_count(data, "fileSize"),
        mime_type=data.get("mimeType") or "application/octet-stream",
        total_chunks=_require_count(data, "totalChunks"),
    )


def _file_chunk_from_dict(data):
    return FileChunkFrame(
        chunk_index=_require_count(data, "chunkIndex"),
        total_chunks=_require_count(data, "totalChunks"),
        data=_require_bytes(data, "bytes"),
    )


def _file_complete_from_dict(data):
    return FileCompleteFrame(
        file_name=_require_str(data, "fileName"),
        file_size=_require_count(data, "fileSize"),
        mime_type=data.get("mimeType") or "application/octet-stream",
    )


_DECODERS = {
    FrameType.CHAT: _chat_from_dict,
    FrameType.FILE_INFO: _file_info_from_dict,
    FrameType.FILE_CHUNK: _file_chunk_from_dict,
    FrameType.FILE_COMPLETE: _file_complete_from_dict,
}


def decode_frame(raw):
    """
    Parses one direct-channel frame.

    Args:
        raw (str | bytes): Text received from the channel.

    Returns:
        ChatFrame | FileInfoFrame | FileChunkFrame | FileCompleteFrame

    Raises:
        ProtocolError: If the text is not JSON, the type tag is unknown, or a field is malformed.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ProtocolError(f"Frame is not valid JSON: {e}", code="INVALID_FRAME") from e
    if not isinstance(data, dict):
        raise ProtocolError("Frame is not a JSON object", code="INVALID_FRAME")
    try:
        frame_type = FrameType(data.get("type"))
    except ValueError:
        raise ProtocolError(f"Unknown frame type {data.get('type')!r}", code="UNKNOWN_FRAME") from None
    return _DECODERS[frame_type](data)
