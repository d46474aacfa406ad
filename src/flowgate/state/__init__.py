from flowgate.state.store import MISSING, OWNERSHIP, StateStore, owner_of

__all__ = ["MISSING", "OWNERSHIP", "StateStore", "owner_of"]
