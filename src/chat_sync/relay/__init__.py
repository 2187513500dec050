from chat_sync.relay.hub import RelayHub, RelaySession

__all__ = ["RelayHub", "RelaySession"]
