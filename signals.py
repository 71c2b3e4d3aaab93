"""Blinker signals shared by the web app, the reconciler and read-side caches."""

from blinker import Namespace

_signals = Namespace()

# Sent by the host when a browser transitions from anonymous to signed in.
# kwargs: user_id, session_id, active_analysis_id
user_signed_in = _signals.signal("user-signed-in")

# Sent after selections may have changed outside the current request
# (reconciliation finished). kwargs: user_id, session_id, summary
selections_changed = _signals.signal("selections-changed")
