"""
Thread-safe RPC access for ceebalancer

pyln-client's RPC is not inherently thread-safe for concurrent calls. The
timer thread and the plugin's main thread (manual triggers, status calls)
both talk to lightningd, so every call goes through one lock.
"""

import threading

from pyln.client import Plugin


RPC_LOCK = threading.Lock()


class ThreadSafeRpcProxy:
    """
    Wraps a LightningRpc handle and serializes every method call.

    Attribute-style calls (rpc.listfunds(), rpc.setchannel(id=...)) and the
    generic rpc.call(method, payload) form are both supported.
    """

    def __init__(self, rpc, lock: threading.Lock = RPC_LOCK):
        self._rpc = rpc
        self._lock = lock

    def __getattr__(self, name):
        attr = getattr(self._rpc, name)
        if not callable(attr):
            return attr

        def wrapper(*args, **kwargs):
            with self._lock:
                return attr(*args, **kwargs)

        return wrapper


class ThreadSafePluginProxy:
    """
    A proxy for the Plugin object that provides thread-safe RPC access.
    """

    def __init__(self, plugin_instance: Plugin, lock: threading.Lock = RPC_LOCK):
        """Wrap the original plugin with a serialized RPC proxy."""
        self._plugin = plugin_instance
        self.rpc = ThreadSafeRpcProxy(plugin_instance.rpc, lock)

    def log(self, message, level='info'):
        """Delegate logging to the original plugin."""
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        """Delegate all other attribute access to the original plugin."""
        return getattr(self._plugin, name)
