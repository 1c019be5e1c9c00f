from . import configuration, discovery, health, servers

__all__ = ["configuration", "discovery", "health", "servers"]
