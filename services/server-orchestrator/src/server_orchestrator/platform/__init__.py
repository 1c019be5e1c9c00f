from .gateway import PlatformGateway, used_node_ports
from .memory import InMemoryPlatform

__all__ = ["InMemoryPlatform", "PlatformGateway", "used_node_ports"]
