"""Authentication.

Learn: chatcast does not own users. It verifies JWT bearer tokens
issued by the chat application and uses the ``sub`` claim as the
principal for channel authorization. Two entry points:
1. HTTP routes → Authorization: Bearer <token>
2. WebSocket → ?token=<token> (browsers can't set headers on upgrade)
"""
