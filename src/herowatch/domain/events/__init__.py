from .chain import DecodedLog, DeathEvent, StakedEvent

__all__ = ["DecodedLog", "DeathEvent", "StakedEvent"]
