""" Timers
"""
import weakref
from time import time

MIN_INTERVAL = 0.0001


class Timer(object):
    """ Fires `action` at `fire_date` and, when `repeats` is set,
    every `interval` seconds after that. A timer does nothing until
    it is added to a run loop with `RunLoop.add_timer`.
    """

    def __init__(self, interval, action, *, repeats=False, fire_date=None, user_info=None):
        assert callable(action)
        assert isinstance(interval, (int, float))
        self._interval = interval if interval > 0 else MIN_INTERVAL
        self._fire_date = fire_date if fire_date is not None else time() + interval
        self._repeats = bool(repeats)
        self._action = action
        self._user_info = user_info
        self._valid = True
        self._schedules = list()

    def __repr__(self):
        return '<{} at {:#x} fire_date={:.3f} interval={} repeats={} valid={}>'.format(
            self.__class__.__name__, id(self), self._fire_date,
            self._interval, self._repeats, self._valid)

    @classmethod
    def scheduled(cls, interval, action, *, repeats=False, user_info=None, run_loop=None):
        """ Creates the timer and adds it to the default mode
        of `run_loop` or of the current thread run loop.
        """
        from monsoon.core.runloop import RunLoop, DEFAULT_MODE
        timer = cls(interval, action, repeats=repeats, user_info=user_info)
        (run_loop or RunLoop.current()).add_timer(timer, DEFAULT_MODE)
        return timer

    @property
    def fire_date(self):
        """ Date of next firing. """
        return self._fire_date

    @fire_date.setter
    def fire_date(self, value):
        self._fire_date = value

    @property
    def interval(self):
        """ Repeating interval in seconds. """
        return self._interval

    @property
    def repeats(self):
        return self._repeats

    @property
    def user_info(self):
        return self._user_info

    @property
    def valid(self):
        """ Returns `False` if this timer has been invalidated. """
        return self._valid

    def fire(self):
        """ Runs the action at once. A non-repeating timer is
        invalidated after that.
        """
        if self._valid:
            try:
                self._action(self)
            finally:
                if not self._repeats:
                    self.invalidate()

    def invalidate(self):
        """ Stops this timer from ever firing again and removes it from
        every run loop mode it was added to.
        """
        if self._valid:
            self._valid = False
            schedules, self._schedules = self._schedules, list()
            for loop_ref, mode in schedules:
                loop = loop_ref()
                if loop is not None:
                    loop._discard_timer(self, mode)

    def _attach(self, loop, mode):
        self._schedules.append((weakref.ref(loop), mode))

    def _detach(self, loop, mode):
        self._schedules = [(loop_ref, mode_) for loop_ref, mode_ in self._schedules
                           if not (loop_ref() is loop and mode_ == mode)]
