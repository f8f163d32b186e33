"""
Domain event signals.

Built on blinker, the signalling library Flask's own ``flask.signals`` use.
Senders fire after their transaction commits; receivers must not raise into
the sender.

Signals:
    reference_moved     — sender=Reference, movement=Movement, actor_id=int
    reopen_requested    — sender=Reference, actor_id=int
    reopen_resolved     — sender=Reference, approved=bool, requester_id=int, actor_id=int
    identity_changed    — sender=IdentitySnapshot, changed_fields=list[str]
"""

from blinker import Namespace

_signals = Namespace()

reference_moved = _signals.signal("reference-moved")
reopen_requested = _signals.signal("reopen-requested")
reopen_resolved = _signals.signal("reopen-resolved")
identity_changed = _signals.signal("identity-changed")
