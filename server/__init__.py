# server/__init__.py
# SovereignShare signaling relay: identity registry, envelope routing and the WebSocket front end.
