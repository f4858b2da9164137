"""chatcast — real-time fan-out of chat messages to WebSocket subscribers.

The persistence path stores a message and hands it to the broadcast
service; every connected, authorized subscriber of the target channel
gets a sequenced "message-created" frame.
"""

__version__ = "0.1.0"
