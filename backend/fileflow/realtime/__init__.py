from fileflow.realtime.gateway import StreamConnection, StreamState
from fileflow.realtime.notifier import ChangeEvent, ChangeNotifier, Subscription

__all__ = ["ChangeNotifier", "ChangeEvent", "Subscription", "StreamConnection", "StreamState"]
