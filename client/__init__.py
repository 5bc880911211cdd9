# client/__init__.py
# SovereignShare peer: session state machine, chunked transfer, signaling and direct-channel transports.
