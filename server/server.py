# server/server.py
# This file contains the WebSocket front end of the SovereignShare signaling relay.
# Responsibilities include:
# - Accepting client connections and handing each inbound frame to the SignalingRelay.
# - Implementing rate limiting for connections and messages to prevent abuse.
# - Isolating per-connection faults so one misbehaving client cannot affect other sessions.
# - Answering the HTTP health check on the same port.
# - Setting up SSL context for Secure WebSockets (WSS) if configured.
# - Shutting down cleanly on SIGTERM.

import asyncio          # For asynchronous operations (coroutines, event loop, tasks).
import http             # For HTTP status codes in the health check response.
import json             # For serializing the health check document.
import logging          # For logging server events, warnings, and errors.
import signal           # For the SIGTERM shutdown handler.
import ssl              # For creating SSL contexts for WSS.
import time             # For timestamping in rate limiting logic and uptime.

import websockets       # The WebSocket library used for server implementation.
import websockets.exceptions

from common import protocol
from server import config
from server.relay import SignalingRelay, describe, send_json

# --- Relay Instance ---
# RELAY owns the Identity Registry; this module only feeds it frames and lifecycle events.
RELAY = SignalingRelay()

# START_TIME: Monotonic timestamp when this module was loaded, used to report uptime.
START_TIME = time.monotonic()

# --- Rate Limiting State ---
# CONNECTION_ATTEMPTS: Recent connection timestamps per IP address.
# Structure: { 'ip_address' (string): [timestamp1 (float), timestamp2, ...], ... }
CONNECTION_ATTEMPTS = {}

# MESSAGE_TIMESTAMPS: Recent message timestamps per open connection.
# Structure: { <connection object>: [timestamp1 (float), timestamp2, ...], ... }
MESSAGE_TIMESTAMPS = {}


def allow_connection(client_ip, now=None):
    """
    Sliding-window check for new connections from `client_ip`.
    Records the attempt when it is allowed.

    Returns:
        bool: False if the IP exceeded MAX_CONNECTIONS_PER_IP within CONNECTION_WINDOW_SECONDS.
    """
    now = time.time() if now is None else now
    # Filter out timestamps older than the window.
    valid_attempts = [t for t in CONNECTION_ATTEMPTS.get(client_ip, []) if now - t < config.CONNECTION_WINDOW_SECONDS]
    if len(valid_attempts) >= config.MAX_CONNECTIONS_PER_IP:
        CONNECTION_ATTEMPTS[client_ip] = valid_attempts
        return False
    valid_attempts.append(now)
    CONNECTION_ATTEMPTS[client_ip] = valid_attempts
    return True


def allow_message(websocket, now=None):
    """
    Sliding-window check for messages on one connection.
    Records the message when it is allowed.

    Returns:
        bool: False if the connection exceeded MAX_MESSAGES_PER_CONNECTION within MESSAGE_WINDOW_SECONDS.
    """
    now = time.time() if now is None else now
    valid_message_times = [t for t in MESSAGE_TIMESTAMPS.get(websocket, []) if now - t < config.MESSAGE_WINDOW_SECONDS]
    if len(valid_message_times) >= config.MAX_MESSAGES_PER_CONNECTION:
        MESSAGE_TIMESTAMPS[websocket] = valid_message_times
        return False
    valid_message_times.append(now)
    MESSAGE_TIMESTAMPS[websocket] = valid_message_times
    return True


# --- Health Check ---
def health_status():
    """The JSON document served on HEALTH_PATH."""
    return {
        "status": "healthy",
        "timestamp": protocol.utc_timestamp(),
        **RELAY.stats(),
        "uptime": round(time.monotonic() - START_TIME, 3),
    }


def process_request(connection, request):
    """
    websockets hook run before the opening handshake.
    Answers GET HEALTH_PATH with the health document; every other path proceeds to the WebSocket upgrade.
    """
    if request.path.split("?", 1)[0] != config.HEALTH_PATH:
        return None
    response = connection.respond(http.HTTPStatus.OK, json.dumps(health_status()) + "\n")
    # respond() labels the body text/plain; replace it with the JSON media type.
    del response.headers["Content-Type"]
    response.headers["Content-Type"] = "application/json"
    return response


# --- Main Connection Handler ---
async def connection_handler(websocket):
    """
    Handles an individual client's WebSocket connection lifecycle.
    It performs:
    1. Connection Rate Limiting based on client IP.
    2. A receive loop that rate-limits each message and hands it to the relay.
    3. Cleanup (unregistration and peer-left notices) however the loop exits.

    Args:
        websocket (websockets.asyncio.server.ServerConnection): The connection representing the client.
    """
    client_address = describe(websocket)
    client_ip = websocket.remote_address[0] if websocket.remote_address else "unknown"
    logging.info(f"Client attempting connection from {client_address}")

    # --- Connection Rate Limiting ---
    if not allow_connection(client_ip):
        logging.warning(f"Connection rate limit exceeded for IP {client_ip}. Closing connection.")
        await websocket.close(code=1008, reason="Connection rate limit exceeded")
        return
    logging.info(f"Connection accepted from {client_address}")
    MESSAGE_TIMESTAMPS[websocket] = []
    RELAY.on_connect(websocket)

    try:
        # --- Message Receiving Loop ---
        async for message in websocket:
            # --- Message Rate Limiting ---
            if not allow_message(websocket):
                logging.warning(f"Message rate limit exceeded for {client_address} "
                                f"({RELAY.registry.identity_of(websocket) or 'Unregistered'}). Closing connection.")
                await send_json(websocket, protocol.EVT_ERROR,
                                {"code": protocol.E_RATE_LIMITED, "reason": "Message rate limit exceeded. Disconnecting."})
                await websocket.close(code=1008, reason="Message rate limit exceeded")
                break

            # Per-message isolation: a fault in one frame is logged and the loop keeps serving.
            try:
                await RELAY.handle_message(websocket, message)
            except Exception:
                logging.exception(f"Unexpected error handling message from {client_address}")

    # --- Connection Closed Handling ---
    except websockets.exceptions.ConnectionClosedError as e:
        logging.info(f"Client {client_address} disconnected with error: {e}")
    except Exception:
        logging.exception(f"An unexpected error occurred handling client {client_address}")
    finally:
        # --- Cleanup ---
        MESSAGE_TIMESTAMPS.pop(websocket, None)
        await RELAY.on_disconnect(websocket)
        logging.info(f"Connection closed for {client_address}")


def build_ssl_context():
    """
    Creates the server SSL context from CERT_FILE / KEY_FILE if ENABLE_SSL is set.

    Returns:
        ssl.SSLContext | None: None means plain WS (SSL disabled or certificates unusable).
    """
    if not config.ENABLE_SSL:
        return None
    try:
        logging.info(f"Attempting to load SSL cert: {config.CERT_FILE}")
        logging.info(f"Attempting to load SSL key: {config.KEY_FILE}")
        ssl_context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
        ssl_context.load_cert_chain(config.CERT_FILE, config.KEY_FILE)
        logging.info("SSL context created successfully. Server will use WSS.")
        return ssl_context
    except FileNotFoundError:
        logging.error(f"SSL Error: Certificate or Key file not found (Cert: '{config.CERT_FILE}', "
                      f"Key: '{config.KEY_FILE}'). Disabling SSL, falling back to WS.")
    except (ssl.SSLError, OSError):
        logging.exception("SSL Error: Failed to create SSL context. Disabling SSL, falling back to WS.")
    return None


# --- Server Startup Function ---
def _request_stop(stop):
    if not stop.done():
        logging.info("Received SIGTERM, shutting down relay...")
        stop.set_result(None)


async def start_server(host, port, stop=None):
    """
    Starts the relay on `host`:`port` and serves until SIGTERM or until `stop` completes.

    Leaving the serve context closes every client connection before this returns.

    Args:
        host (str): The hostname or IP address to bind to (from config).
        port (int): The port number to bind to (from config).
        stop (asyncio.Future, optional): Completing it shuts the relay down; SIGTERM completes it too.
    """
    loop = asyncio.get_running_loop()
    if stop is None:
        stop = loop.create_future()
    ssl_context = build_ssl_context()
    effective_protocol = "wss" if ssl_context else "ws"
    logging.info(f"Starting relay on {effective_protocol}://{host}:{port}")
    logging.info(f"Health check: {'https' if ssl_context else 'http'}://{host}:{port}{config.HEALTH_PATH}")
    logging.info(f"Connection Rate Limit: {config.MAX_CONNECTIONS_PER_IP} per {config.CONNECTION_WINDOW_SECONDS}s per IP")
    logging.info(f"Message Rate Limit: {config.MAX_MESSAGES_PER_CONNECTION} per {config.MESSAGE_WINDOW_SECONDS}s per Connection")
    logging.info(f"Maximum WebSocket message size set to: {config.MAX_MESSAGE_SIZE} bytes")
    logging.info(f"Server Debug Logging: {'ENABLED' if config.DEBUG else 'DISABLED'}")

    try:
        loop.add_signal_handler(signal.SIGTERM, _request_stop, stop)
        handles_sigterm = True
    except (NotImplementedError, RuntimeError) as e:
        # No loop signal handlers on Windows or outside the main thread; Ctrl+C still stops the relay.
        logging.warning(f"SIGTERM handler not installed: {e}")
        handles_sigterm = False

    try:
        async with websockets.serve(
            connection_handler,
            host,
            port,
            ssl=ssl_context,
            max_size=config.MAX_MESSAGE_SIZE,
            process_request=process_request,
        ):
            await stop
        logging.info("Relay stopped; all client connections closed.")
    except OSError:
        logging.exception(f"OSError starting server on {host}:{port} - Is the port already in use?")
        raise
    finally:
        if handles_sigterm:
            loop.remove_signal_handler(signal.SIGTERM)
