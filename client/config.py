# client/config.py
# This file centralizes configuration settings for the SovereignShare client.

import os # For building default paths relative to the working directory and this file.

# --- Signaling Configuration ---

# SIGNALING_URL: WebSocket URL of the relay. Use wss:// when the relay has certificates.
SIGNALING_URL = 'ws://localhost:8000'

# SIGNALING_VERIFY_TLS: Verify the relay certificate for wss:// URLs.
# Leave True for real deployments; set False only for self-signed local certificates.
SIGNALING_VERIFY_TLS = True

# --- Session Configuration ---

# CONNECT_TIMEOUT_SECONDS: How long a session may stay in Offering/Negotiating before it is closed
# with a timeout error and the user is offered a retry.
CONNECT_TIMEOUT_SECONDS = 30.0

# --- Direct Channel Configuration ---

# DIRECT_LISTEN_HOST: Interface the offering peer listens on for the incoming direct connection.
DIRECT_LISTEN_HOST = '0.0.0.0'

# DIRECT_CANDIDATE_HOSTS: Addresses advertised to the other peer as address hints.
# Empty list means: discover local IPv4 addresses automatically (loopback is always advertised last).
DIRECT_CANDIDATE_HOSTS = []

# DIRECT_DIAL_TIMEOUT_SECONDS: How long the answering peer tries one advertised address.
DIRECT_DIAL_TIMEOUT_SECONDS = 5.0

# DIRECT_ENABLE_SSL: Encrypt the direct channel with TLS using the certificate below when it exists.
DIRECT_ENABLE_SSL = True
CERT_DIR = os.path.join(os.path.dirname(__file__), '..', 'certs')
CERT_FILE = os.path.join(CERT_DIR, 'cert.pem')
KEY_FILE = os.path.join(CERT_DIR, 'key.pem')

# DIRECT_MAX_FRAME_SIZE: Largest direct-channel frame accepted, in bytes.
# A 16 KiB chunk encoded as a JSON integer array is roughly 64 KiB, so this leaves ample headroom.
DIRECT_MAX_FRAME_SIZE = 1024 * 1024

# --- File Transfer Configuration ---

# CHUNK_SIZE: Bytes per fileChunk frame (16 KiB stays under typical data-channel message limits).
CHUNK_SIZE = 16 * 1024

# CHUNK_PACING_SECONDS: Minimum pause after each chunk, on top of the channel's own backpressure.
CHUNK_PACING_SECONDS = 0.01

# MAX_FILE_SIZE_BYTES: Largest incoming file accepted. Example: 100 MB = 100 * 1024 * 1024 bytes.
MAX_FILE_SIZE_BYTES = 100 * 1024 * 1024

# DOWNLOAD_DIR: Where received files are written by the 'save' command.
DOWNLOAD_DIR = os.path.join(os.getcwd(), 'downloads')

# --- Invitation Configuration ---

# INVITE_BASE_URL: Base of the shareable link; the identity is appended as the 'code' query parameter.
INVITE_BASE_URL = 'http://localhost:8000/'

# --- Debugging Configuration ---

# DEBUG: Log negotiation steps and frame types. Chat text and file bytes are never logged.
DEBUG = False
