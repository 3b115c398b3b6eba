""" Message ports
"""
import weakref

from monsoon.core.abc import RunLoopEvents
from monsoon.core.notifications import NotificationCenter
from monsoon.core.runloop import EventType, DEFAULT_MODE
from monsoon.core.utils import logger

PORT_DID_BECOME_INVALID = 'PortDidBecomeInvalid'


class PortMessage(object):
    """ Message delivered by a port to its delegate.
    """

    def __init__(self, data, receive_port, send_port=None, *, address=None, reply=None):
        self.data = data
        self.receive_port = receive_port
        self.send_port = send_port
        self.address = address
        self._reply = reply

    def __repr__(self):
        return '<{} {} bytes from {}>'.format(
            self.__class__.__name__, len(self.data), self.address or self.send_port)

    def reply(self, data):
        """ Sends `data` back to the sender of this message.
        """
        if self._reply is None:
            raise ValueError("Message has no way to reply")
        return self._reply(data)


class Port(RunLoopEvents):
    """ Base message-oriented communication endpoint.
    """

    def __init__(self, delegate=None):
        self._valid = True
        self._delegate = delegate
        self._schedules = list()

    def __repr__(self):
        return '<{} at {:#x} valid={}>'.format(self.__class__.__name__, id(self), self._valid)

    @property
    def valid(self):
        """ Returns `False` if this port has been invalidated. """
        return self._valid

    @property
    def delegate(self):
        """ Receiver of the messages arrived to this port. """
        return self._delegate

    @delegate.setter
    def delegate(self, value):
        self._delegate = value

    @property
    def run_loops(self):
        """ List of (run loop, mode) pairs this port is added to. """
        result = list()
        for loop_ref, mode in self._schedules:
            loop = loop_ref()
            if loop is not None:
                result.append((loop, mode))
        return result

    def add_to_run_loop(self, loop, mode=DEFAULT_MODE):
        loop.add_port(self, mode)

    def remove_from_run_loop(self, loop, mode=DEFAULT_MODE):
        loop.remove_port(self, mode)

    def _attach(self, loop, mode):
        self._schedules.append((weakref.ref(loop), mode))

    def _detach(self, loop, mode):
        self._schedules = [(loop_ref, mode_) for loop_ref, mode_ in self._schedules
                           if not (loop_ref() is loop and mode_ == mode)]

    def invalidate(self):
        """ Makes this port invalid, removes it from every run loop mode
        it was added to and posts `PORT_DID_BECOME_INVALID`.
        """
        if self._valid:
            self._valid = False
            for loop, mode in self.run_loops:
                loop.remove_event(self, EventType.PORT, mode, all=True)
            self._schedules.clear()
            try:
                self._release()
            finally:
                logger.debug("%r has been invalidated", self)
                port_invalidated = getattr(self._delegate, 'port_invalidated', None)
                if port_invalidated is not None:
                    try:
                        port_invalidated(self)
                    except Exception:
                        logger.exception("Exception when notifying delegate of %r", self)
                NotificationCenter.default().post(PORT_DID_BECOME_INVALID, self)

    def _release(self):
        """ Called once to release resources on invalidation. """

    def get_fds(self):
        """ Returns mapping of descriptors to event masks which the run loop
        should wait for on behalf of this port.
        """
        return dict()

    def ready_to_deliver(self):
        """ Returns `True` if a message may be delivered without waiting.
        """
        return False

    def received_event(self, data, type_, extra, mode):
        """ See for detail `RunLoopEvents.received_event` """

    def handle_port_message(self, message):
        """ Passes `message` to the delegate.
        """
        if self._delegate is not None:
            self._delegate.handle_port_message(message)
        else:
            logger.debug("%r has no delegate, dropped %r", self, message)

    def send_before_date(self, data, before=None, send_port=None):
        """ Sends `data` to this port, gives up at `before`. The receiver
        may reply to `send_port`.

        Returns:
            `True` if message has been sent.
        """
        raise NotImplementedError("Method `send_before_date` must be implemented")
