# client/main.py
# Entry point for the SovereignShare command-line peer.
# Generates (or takes) an identity, registers with the relay, and runs an interactive command loop
# on top of the session state machine. UI events from the machine are printed as they happen.

import argparse  # For --url / --identity / --invite / --debug.
import asyncio   # Runs the signaling receive loop next to the command loop.
import logging   # Standard logging for client events and errors.
import shlex     # For splitting commands with quoted file paths.

from client import config
from client import session as sess
from client.direct import SocketPeerConnection
from client.identity import build_invite_link, generate_identity, parse_invite_link
from client.session import SessionMachine
from client.signaling import SignalingClient
from common.errors import SignalingError
from common.protocol import is_valid_identity

HELP_TEXT = """Commands:
  connect [ID]       Request a session with a peer (defaults to the invite target)
  accept             Accept the incoming connection request
  reject             Decline the incoming connection request
  say TEXT           Send a chat message
  send PATH          Send a file
  save [N] [DIR]     Save received file N (default: the latest)
  hangup             End the current session
  invite             Show this client's invitation link
  status             Show identity, relay and session state
  help               Show this help
  quit               Exit"""


def print_event(event):
    """Renders one UiEvent from the session state machine on the terminal."""
    data = event.data
    if event.kind == sess.EV_NOTICE:
        marker = {"success": "[✓]", "error": "[✗]", "warning": "[!]"}.get(data["level"], "[i]")
        print(f"{marker} {data['message']}")
    elif event.kind == sess.EV_REGISTERED:
        print(f"[i] Registered as {data['identity']}")
    elif event.kind == sess.EV_OFFERED:
        print(f"[?] {data['identity']} wants to connect. Type 'accept' or 'reject'.")
    elif event.kind == sess.EV_CONNECTED:
        print(f"[✓] Connected to {data['identity']}")
    elif event.kind == sess.EV_CLOSED:
        hint = " Type 'connect' to try again." if data["retry"] else ""
        print(f"[{'✗' if data['error'] else 'i'}] Session with {data['identity']} closed: {data['reason']}.{hint}")
    elif event.kind == sess.EV_CHAT:
        entry = data["entry"]
        print(f"[{entry.timestamp}] {'you' if entry.sender == 'me' else 'peer'}: {entry.text}")
    elif event.kind == sess.EV_PROGRESS:
        if data["percent"] % 25 == 0:
            verb = "Sending" if data["direction"] == "send" else "Receiving"
            print(f"[i] {verb} {data['file_name']}: {data['percent']}%")
    elif event.kind == sess.EV_FILE_RECEIVED:
        received = data["file"]
        print(f"[✓] Received {received.name} ({received.size} bytes). Type 'save' to write it to disk.")
    elif event.kind == sess.EV_TRANSFER_FAILED:
        print(f"[✗] Transfer failed: {data['reason']}")


class CommandLoop:
    """Maps typed commands onto SessionMachine intents."""

    def __init__(self, machine, signaling, invite_target=None):
        self.machine = machine
        self.signaling = signaling
        self.invite_target = invite_target
        self.commands = {
            "connect": self.cmd_connect,
            "accept": self.cmd_accept,
            "reject": self.cmd_reject,
            "say": self.cmd_say,
            "send": self.cmd_send,
            "save": self.cmd_save,
            "hangup": self.cmd_hangup,
            "invite": self.cmd_invite,
            "status": self.cmd_status,
            "help": self.cmd_help,
        }

    async def execute(self, line):
        """
        Runs one command line.

        Returns:
            bool: False when the user asked to quit.
        """
        line = line.strip()
        if not line:
            return True
        name, _, rest = line.partition(" ")
        name = name.lower()
        if name in ("quit", "exit"):
            return False
        handler = self.commands.get(name)
        if handler is None:
            print(f"Unknown command '{name}'. Type 'help' for the list of commands.")
            return True
        await handler(rest.strip())
        return True

    async def cmd_connect(self, arg):
        target = arg or self.invite_target
        if not target:
            print("Usage: connect <peer ID>")
            return
        await self.machine.request_connection(target)

    async def cmd_accept(self, arg):
        await self.machine.accept()

    async def cmd_reject(self, arg):
        await self.machine.reject()

    async def cmd_say(self, arg):
        if not arg:
            print("Usage: say <message>")
            return
        await self.machine.send_chat(arg)

    async def cmd_send(self, arg):
        parts = shlex.split(arg)
        if len(parts) != 1:
            print("Usage: send <path>")
            return
        await self.machine.send_file(parts[0])

    async def cmd_save(self, arg):
        files = self.machine.received_files
        if not files:
            print("No received files to save.")
            return
        parts = shlex.split(arg)
        index = len(files)
        if parts and parts[0].isdigit():
            index = int(parts.pop(0))
        if not 1 <= index <= len(files):
            print(f"Usage: save [1-{len(files)}] [directory]")
            return
        try:
            path = files[index - 1].save(parts[0] if parts else None)
        except OSError as e:
            logging.error(f"Could not save {files[index - 1].name}: {e}")
            print(f"[✗] Could not save file: {e}")
            return
        print(f"[✓] Saved {path}")

    async def cmd_hangup(self, arg):
        await self.machine.terminate()

    async def cmd_invite(self, arg):
        print(build_invite_link(config.INVITE_BASE_URL, self.machine.local_identity))

    async def cmd_status(self, arg):
        relay = "registered" if self.signaling.registered else ("connected" if self.signaling.connected else "offline")
        print(f"ID: {self.machine.local_identity}  relay: {relay}  session: {self.machine.phase.value}"
              + (f" with {self.machine.remote_identity}" if self.machine.remote_identity else ""))
        for number, received in enumerate(self.machine.received_files, start=1):
            print(f"  file {number}: {received.name} ({received.size} bytes)")

    async def cmd_help(self, arg):
        print(HELP_TEXT)


async def run(args):
    identity = args.identity or generate_identity()
    signaling = SignalingClient(identity, args.url)
    machine = SessionMachine(identity, signaling, peer_factory=SocketPeerConnection, on_event=print_event)
    signaling.handler = machine

    invite_target = None
    if args.invite:
        invite_target = parse_invite_link(args.invite)
        if invite_target is None:
            logging.warning(f"Invitation link {args.invite!r} carries no valid peer ID. Ignoring.")

    try:
        await signaling.connect()
    except SignalingError as e:
        logging.error(str(e))
        return 1
    receive_task = asyncio.create_task(signaling.run())

    print(f"Your ID: {identity}")
    print(f"Invite link: {build_invite_link(config.INVITE_BASE_URL, identity)}")
    if invite_target:
        print(f"Invited by {invite_target}. Type 'connect' to start the session.")
    print("Type 'help' for commands.")

    loop = CommandLoop(machine, signaling, invite_target)
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "> ")
            except EOFError:
                break
            if not await loop.execute(line):
                break
    finally:
        await machine.terminate()
        await signaling.close()
        await receive_task
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="sovereign-client", description="SovereignShare command-line peer.")
    parser.add_argument("--url", default=config.SIGNALING_URL, help="Relay WebSocket URL.")
    parser.add_argument("--identity", help="Use this 10-character ID instead of a random one.")
    parser.add_argument("--invite", help="Invitation link; pre-fills the peer to connect to.")
    parser.add_argument("--debug", action="store_true", help="Log negotiation steps.")
    args = parser.parse_args(argv)

    if args.identity and not is_valid_identity(args.identity):
        parser.error("--identity must be 10 alphanumeric characters")
    if args.debug:
        config.DEBUG = True

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        logging.info("Client stopped manually via KeyboardInterrupt.")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
