"""
Wait queue — chats waiting for a human agent.

Backed by a shared list in the key-value store so that every router
instance serves the same FIFO:
- Escalations with no connected agent PUSH the chat id
- A newly connected agent POPs the oldest entry
"""
