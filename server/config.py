# server/config.py
# This file centralizes configuration settings for the SovereignShare signaling relay.

import os # Import the 'os' module to help construct file paths and read environment overrides.

# --- Network Configuration ---

# HOST: The IP address the relay should listen on.
# - '0.0.0.0': Listen on all available network interfaces.
# - '127.0.0.1' or 'localhost': Listen only on the local machine.
HOST = '0.0.0.0'

# PORT: The TCP port for both the WebSocket signaling endpoint and the HTTP health check.
# Can be overridden with the PORT environment variable (useful on hosting platforms).
PORT = int(os.environ.get('PORT', 8000))

# --- SSL Configuration ---
# Settings related to enabling Secure WebSockets (WSS) using TLS/SSL certificates.

# CERT_DIR: The directory where SSL certificate files (cert.pem, key.pem) are expected to be located.
# Calculated relative to this config file's location (server/ -> ../certs/).
CERT_DIR = os.path.join(os.path.dirname(__file__), '..', 'certs')

# CERT_FILE / KEY_FILE: Certificate chain and private key used when ENABLE_SSL is True.
CERT_FILE = os.path.join(CERT_DIR, 'cert.pem')
KEY_FILE = os.path.join(CERT_DIR, 'key.pem')

# ENABLE_SSL: Master switch for WSS. If the files above are missing the relay logs an error
# and falls back to plain WS.
ENABLE_SSL = True

# --- Rate Limiting Configuration ---
# Helps mitigate abuse by limiting connection and message frequency.

# Maximum number of new connections from one IP address within CONNECTION_WINDOW_SECONDS.
MAX_CONNECTIONS_PER_IP = 10
CONNECTION_WINDOW_SECONDS = 60

# Maximum number of messages from one connection within MESSAGE_WINDOW_SECONDS.
# Negotiation bursts several ice-candidate envelopes at once, so this is more generous than a chat relay needs.
MAX_MESSAGES_PER_CONNECTION = 50
MESSAGE_WINDOW_SECONDS = 5

# --- Message Limits ---

# MAX_MESSAGE_SIZE: Largest signaling frame accepted, in bytes.
# Session descriptions and address hints are small; file data never passes through the relay.
MAX_MESSAGE_SIZE = 64 * 1024

# --- Relay Behaviour ---

# BROADCAST_PEER_LEFT: When True, a 'peer-left' notice is sent to every other connection whenever a
# registered client disconnects, so an active partner can detect silent loss.
BROADCAST_PEER_LEFT = True

# HEALTH_PATH: HTTP path answered with a JSON status document instead of a WebSocket upgrade.
HEALTH_PATH = '/api/health'

# --- Debugging Configuration ---

# DEBUG: When True, logs per-message routing detail (event names, identities, envelope kinds).
# Negotiation payloads are never logged, even in debug mode.
DEBUG = False
