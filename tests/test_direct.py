import asyncio
import io
import os

import pytest

from client.direct import SocketPeerConnection
from client.transfer import FileReceiver, FileSender
from common.errors import ChannelError
from common.frames import FileChunkFrame, FileInfoFrame, decode_frame
from fakes import wait_until


def make_connection():
    return SocketPeerConnection(listen_host="127.0.0.1", candidate_hosts=["127.0.0.1"], enable_ssl=False)


async def open_pair(offerer, answerer):
    """Runs the offer/answer exchange between two loopback connections until both are open."""
    hints, opened = [], []

    async def collect_hint(candidate):
        hints.append(candidate)

    async def offerer_open():
        opened.append("offerer")

    async def answerer_open():
        opened.append("answerer")

    offerer.on_ice_candidate = collect_hint
    offerer.on_open = offerer_open
    answerer.on_open = answerer_open

    offer = await offerer.create_offer()
    await offerer.set_local_description(offer)
    await wait_until(lambda: hints)
    await answerer.set_remote_description(offer)
    for hint in hints:
        await answerer.add_ice_candidate(hint)
    answer = await answerer.create_answer()
    await answerer.set_local_description(answer)
    await offerer.set_remote_description(answer)
    await wait_until(lambda: len(opened) == 2, timeout=5.0)


def test_hint_before_remote_description_is_refused():
    async def scenario():
        with pytest.raises(ChannelError):
            await make_connection().add_ice_candidate({"host": "127.0.0.1", "port": 1, "candidate": "127.0.0.1:1"})

    asyncio.run(scenario())


def test_answer_requires_remote_offer():
    async def scenario():
        with pytest.raises(ChannelError):
            await make_connection().create_answer()

    asyncio.run(scenario())


def test_offer_without_token_is_refused():
    async def scenario():
        with pytest.raises(ChannelError):
            await make_connection().set_remote_description({"type": "offer"})

    asyncio.run(scenario())


def test_loopback_channel_opens_and_carries_frames():
    async def scenario():
        offerer, answerer = make_connection(), make_connection()
        hints, opened, received, closed = [], [], [], []

        async def collect_hint(candidate):
            hints.append(candidate)

        def track(name):
            async def on_open():
                opened.append(name)

            async def on_message(text):
                received.append((name, text))

            async def on_close(reason):
                closed.append(name)

            return on_open, on_message, on_close

        offerer.on_ice_candidate = collect_hint
        offerer.on_open, offerer.on_message, offerer.on_close = track("offerer")
        answerer.on_open, answerer.on_message, answerer.on_close = track("answerer")

        offer = await offerer.create_offer()
        await offerer.set_local_description(offer)
        await wait_until(lambda: hints)

        await answerer.set_remote_description(offer)
        for hint in hints:
            await answerer.add_ice_candidate(hint)
        answer = await answerer.create_answer()
        await answerer.set_local_description(answer)
        # The listening side holds the channel until it has seen the answer.
        await asyncio.sleep(0.1)
        assert "offerer" not in opened
        await offerer.set_remote_description(answer)

        await wait_until(lambda: sorted(opened) == ["answerer", "offerer"], timeout=5.0)
        await answerer.send("ping")
        await offerer.send("pong")
        await wait_until(lambda: len(received) == 2)

        await offerer.close()
        await wait_until(lambda: "answerer" in closed)
        await answerer.close()
        return hints, received, closed

    hints, received, closed = asyncio.run(scenario())
    assert hints[0]["host"] == "127.0.0.1"
    assert hints[0]["candidate"] == f"127.0.0.1:{hints[0]['port']}"
    assert sorted(received) == [("answerer", "pong"), ("offerer", "ping")]
    # A local close is never reported back through on_close.
    assert closed == ["answerer"]


def test_send_before_open_fails():
    async def scenario():
        with pytest.raises(ChannelError):
            await make_connection().send("too early")

    asyncio.run(scenario())


def test_close_during_offer_stops_the_listener():
    async def scenario():
        conn = make_connection()
        task = asyncio.ensure_future(conn.create_offer())
        await asyncio.sleep(0)
        await conn.close()
        with pytest.raises(ChannelError):
            await task
        return conn

    conn = asyncio.run(scenario())
    assert conn._server is not None
    assert not conn._server.is_serving()


def test_file_crosses_the_loopback_channel_intact():
    async def scenario():
        offerer, answerer = make_connection(), make_connection()
        receiver = FileReceiver()
        done = []

        async def on_message(text):
            frame = decode_frame(text)
            if isinstance(frame, FileInfoFrame):
                receiver.handle_info(frame)
            elif isinstance(frame, FileChunkFrame):
                receiver.handle_chunk(frame)
            else:
                done.append(receiver.handle_complete(frame))

        answerer.on_message = on_message
        await open_pair(offerer, answerer)

        data = os.urandom(5 * 16 * 1024 + 123)
        sender = FileSender(offerer, chunk_size=16 * 1024, pacing=0)
        total = await sender.send(io.BytesIO(data), "photo.jpg", len(data), "image/jpeg")
        await wait_until(lambda: done, timeout=5.0)

        await offerer.close()
        await answerer.close()
        return data, total, done[0]

    data, total, received = asyncio.run(scenario())
    assert total == 6
    assert received.name == "photo.jpg"
    assert received.mime_type == "image/jpeg"
    assert received.data == data
