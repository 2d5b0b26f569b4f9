"""Humans - membership lifecycle core for a volunteer community.

Computes membership status from role grants and legal consents, keeps
system-managed teams reconciled with that status, and relays membership
changes to the external groupware system through a transactional outbox.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
