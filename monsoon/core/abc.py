""" Interfaces of classes `monsoon.core`
"""
from abc import ABCMeta, abstractmethod


class RunLoopEvents(metaclass=ABCMeta):
    """ Watcher of the run loop events. Any object registered with
    `RunLoop.add_event` should implement it.
    """

    @abstractmethod
    def received_event(self, data, type_, extra, mode):
        """ Called when the event source `data` of type `type_` is ready.

        `extra` holds the ready event mask for descriptors and a mapping
        of ready descriptors to their event masks for ports.
        """

    def timed_out_event(self, data, type_, mode):
        """ Called when the limit date given to `RunLoop.add_event` has passed.

        Returns:
            new limit date to keep waiting or `None` to remove this watcher.
        """
        return None


class PortDelegate(metaclass=ABCMeta):
    """ Receiver of the messages arrived to a port.
    """

    @abstractmethod
    def handle_port_message(self, message):
        """ Called once for each message delivered by a port.
        """

    def port_invalidated(self, port):
        """ Called when port has become invalid.
        """


class StreamDelegate(metaclass=ABCMeta):
    """ Receiver of the stream events.
    """

    @abstractmethod
    def handle_event(self, stream, event):
        """ Called when `event` has occurred on `stream`.
        """
