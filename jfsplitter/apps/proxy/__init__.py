from jfsplitter.apps.proxy.app import create_app
from jfsplitter.apps.proxy.context import ProxyContext

__all__ = [
    "ProxyContext",
    "create_app",
]
