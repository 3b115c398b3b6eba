""" In-process message ports
"""
import socket
import weakref
from collections import deque

from monsoon.core.port import Port, PortMessage
from monsoon.core.runloop import READ
from monsoon.core.utils import logger


class MessagePort(Port):
    """ Port delivering messages between run loops of one process.

    Messages are queued in memory and a byte written to an internal
    socket pair wakes the run loop which the port is added to.
    """
    _names = weakref.WeakValueDictionary()

    def __init__(self, delegate=None, *, name=None):
        super().__init__(delegate)
        self._name = name
        self._queue = deque()
        self._rx, self._tx = socket.socketpair()
        self._rx.setblocking(False)
        self._tx.setblocking(False)
        if name is not None:
            self._names[name] = self

    def __repr__(self):
        return '<{} {!r} at {:#x} valid={}>'.format(
            self.__class__.__name__, self._name, id(self), self._valid)

    @classmethod
    def named(cls, name, delegate=None):
        """ Returns valid port registered under `name` or creates new one.
        """
        port = cls._names.get(name)
        if port is None or not port.valid:
            port = cls(delegate, name=name)
        return port

    @property
    def name(self):
        return self._name

    @property
    def pending(self):
        """ Number of queued messages """
        return len(self._queue)

    def get_fds(self):
        """ See for detail `Port.get_fds` """
        return {self._rx.fileno(): READ} if self._valid else dict()

    def ready_to_deliver(self):
        """ See for detail `Port.ready_to_deliver` """
        return self._valid and len(self._queue) > 0

    def received_event(self, data, type_, extra, mode):
        """ See for detail `RunLoopEvents.received_event` """
        if not self._valid:
            return
        self._drain()
        if self._queue:
            self.handle_port_message(self._queue.popleft())

    def _drain(self):
        try:
            while self._rx.recv(4096):
                pass
        except BlockingIOError:
            pass

    def send_before_date(self, data, before=None, send_port=None):
        """ Queues `data` for delivery. A message sent with `send_port`
        replies to that port.

        Returns:
            `False` if this port isn't valid.
        """
        if not self._valid:
            return False
        reply = send_port.send_before_date if send_port is not None else None
        self._queue.append(PortMessage(data, self, send_port, reply=reply))
        try:
            self._tx.send(b'\0')
        except BlockingIOError:
            pass
        return True

    def _release(self):
        if self._queue:
            logger.debug("%r discarded %d queued messages", self, len(self._queue))
        self._queue.clear()
        self._rx.close()
        self._tx.close()
        if self._name is not None and self._names.get(self._name) is self:
            del self._names[self._name]
