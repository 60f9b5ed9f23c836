from .settings import AppConfig, OverrideRecord

__all__ = ["AppConfig", "OverrideRecord"]
