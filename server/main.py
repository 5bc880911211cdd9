# server/main.py
# Entry point for the SovereignShare signaling relay.
# Sets up logging, reads host/port from the config module (overridable on the command line),
# and runs the asynchronous server until interrupted (Ctrl+C) or terminated (SIGTERM).

import argparse  # For the optional --host / --port / --debug overrides.
import asyncio   # Runs the relay's event loop.
import logging   # Standard logging for relay events and errors.

from server import config
from server import server


def main(argv=None):
    parser = argparse.ArgumentParser(prog="sovereign-relay", description="SovereignShare signaling relay.")
    parser.add_argument("--host", default=config.HOST)
    parser.add_argument("--port", type=int, default=config.PORT)
    parser.add_argument("--no-ssl", action="store_true", help="Serve plain WS even if certificates exist.")
    parser.add_argument("--debug", action="store_true", help="Log per-message routing detail.")
    args = parser.parse_args(argv)

    if args.no_ssl:
        config.ENABLE_SSL = False
    if args.debug:
        config.DEBUG = True

    # Level INFO shows INFO, WARNING, ERROR, CRITICAL; routing detail is gated on config.DEBUG instead.
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')
    logging.info("Attempting to start relay from main.py...")
    logging.info(f"Using HOST={args.host}, PORT={args.port}")
    try:
        asyncio.run(server.start_server(args.host, args.port))
    except KeyboardInterrupt:
        logging.info("Relay stopped manually via KeyboardInterrupt.")
    except Exception:
        logging.exception("Relay failed to start or crashed in main.py")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
