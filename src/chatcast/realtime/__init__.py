"""Real-time edges of the service — WebSocket transport + Redis relay.

Learn: Events reach subscribers through two hops:
1. Ingress → PublisherGateway (HTTP route, in-process call, or Redis relay)
2. Dispatcher → WebSocketTransport → client

The broadcast core in between never touches a socket or Redis itself.
"""
