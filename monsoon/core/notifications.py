""" Broadcast notifications
"""
import threading

from monsoon.core.utils import logger


class Notification(object):
    """ Posted notification
    """

    def __init__(self, name, sender, info):
        self.name = name
        self.sender = sender
        self.info = info

    def __repr__(self):
        return '<{} {!r} from {!r}>'.format(self.__class__.__name__, self.name, self.sender)


class NotificationCenter(object):
    """ Delivers notifications to any number of observers, independently
    of the delegate of the object that posts them.
    """
    _lock = threading.Lock()
    _default = None

    def __init__(self):
        self._observers = list()

    @classmethod
    def default(cls):
        """ Returns process wide instance.
        """
        with cls._lock:
            if cls._default is None:
                cls._default = cls()
            return cls._default

    def add_observer(self, callback, name, sender=None):
        """ Sets up to call `callback` with a `Notification` each time
        the notification `name` is posted by `sender` or by anybody
        if `sender` is `None`.
        """
        self._observers.append((callback, name, sender))

    def remove_observer(self, callback, name=None, sender=None):
        """ Removes matching observations of `callback`.
        """
        self._observers = [
            (callback_, name_, sender_) for callback_, name_, sender_ in self._observers
            if not (callback_ == callback and
                    (name is None or name_ == name) and
                    (sender is None or sender_ is sender))]

    def post(self, name, sender, **info):
        """ Posts the notification `name` on behalf of `sender`.
        """
        notification = Notification(name, sender, info)
        for callback, name_, sender_ in tuple(self._observers):
            if name_ == name and (sender_ is None or sender_ is sender):
                try:
                    callback(notification)
                except Exception:
                    logger.exception("Exception when calling observer for %s", notification)
        return notification
