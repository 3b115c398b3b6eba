""" Cooperative event-dispatch scheduler
"""
import math
import errno
import select
import threading
from enum import IntEnum
from itertools import count
from collections import deque
from time import time, sleep

from tornado.ioloop import IOLoop
from tornado.util import errno_from_exception

from monsoon.core.utils import logger, DISTANT_FUTURE, seconds_until

DEFAULT_MODE = 'default'
COMMON_MODES = 'common'

READ = IOLoop.READ
WRITE = IOLoop.WRITE
ERROR = IOLoop.ERROR
EXCEPT = getattr(select, 'POLLPRI', 0x002)
INVALID = getattr(select, 'POLLNVAL', 0x020)

# Longest single wait, a pass ends with nothing ready after it
MAX_WAIT = 86400.0


class EventType(IntEnum):
    """ Kind of the event source watched by a run loop.
    """
    READ = 0    # descriptor becoming readable
    WRITE = 1   # descriptor becoming writable
    PORT = 2    # message arriving on port
    EXCEPT = 3  # descriptor with out-of-band data


_MASKS = {
    EventType.READ: READ,
    EventType.WRITE: WRITE,
    EventType.EXCEPT: EXCEPT,
}


def _fileno(data):
    return data if isinstance(data, int) else data.fileno()


class _Watcher(object):
    __slots__ = ('key', 'data', 'type', 'receiver', 'mode', 'limit', 'count', 'active')

    def __init__(self, key, data, type_, receiver, mode, limit):
        self.key = key
        self.data = data
        self.type = type_
        self.receiver = receiver
        self.mode = mode
        self.limit = limit
        self.count = 1
        self.active = True


class _Performer(object):
    __slots__ = ('callback', 'argument', 'order', 'seq', 'active')

    def __init__(self, callback, argument, order, seq):
        self.callback = callback
        self.argument = argument
        self.order = order
        self.seq = seq
        self.active = True

    def matches_target(self, target):
        return getattr(self.callback, '__self__', self.callback) is target


class _ModeContext(object):
    """ Sources registered for one mode """

    def __init__(self, mode):
        self.mode = mode
        self.timers = list()
        self.watchers = dict()
        self.performers = list()

    def prune(self):
        self.timers = [timer for timer in self.timers if timer.valid]
        self.performers = [performer for performer in self.performers if performer.active]

    def empty(self):
        return not (self.timers or self.watchers or self.performers)


class RunLoop(object):
    """ Single-threaded multiplexer of timers, descriptors and ports.

    Sources are registered per named mode and fire only while the loop
    runs in that mode, or in any mode when registered for `COMMON_MODES`.
    """
    _tls = threading.local()

    def __init__(self):
        self._contexts = dict()
        self._mode_stack = deque()
        self._sequence = count()

    def __repr__(self):
        return '<{} at {:#x} mode={!r}>'.format(self.__class__.__name__, id(self), self.current_mode)

    @classmethod
    def current(cls):
        """ Returns the run loop of the calling thread.
        """
        if not hasattr(cls._tls, 'instance'):
            setattr(cls._tls, 'instance', cls())
        return getattr(cls._tls, 'instance')

    @property
    def current_mode(self):
        """ Mode of the pass running now or `None` if this isn't running.
        """
        return self._mode_stack[-1] if self._mode_stack else None

    def _context(self, mode, create=False):
        ctx = self._contexts.get(mode)
        if ctx is None and create:
            ctx = self._contexts[mode] = _ModeContext(mode)
        return ctx

    def _contexts_for(self, mode):
        modes = (mode,) if mode == COMMON_MODES else (mode, COMMON_MODES)
        return [self._contexts[mode_] for mode_ in modes if mode_ in self._contexts]

    # timers

    def add_timer(self, timer, mode=DEFAULT_MODE):
        """ Adds `timer` to be fired while running in `mode`.
        An invalidated timer is ignored.
        """
        if timer.valid:
            ctx = self._context(mode, create=True)
            if timer not in ctx.timers:
                ctx.timers.append(timer)
                timer._attach(self, mode)

    def remove_timer(self, timer, mode=DEFAULT_MODE):
        """ Removes `timer` from `mode` without invalidating it.
        """
        if self._discard_timer(timer, mode):
            timer._detach(self, mode)

    def _discard_timer(self, timer, mode):
        ctx = self._context(mode)
        if ctx is not None and timer in ctx.timers:
            ctx.timers.remove(timer)
            return True
        return False

    # descriptors and ports

    def add_event(self, data, type_, watcher, mode=DEFAULT_MODE, limit=None):
        """ Sets up to call `watcher.received_event` when the event
        source `data` of type `type_` is ready while running in `mode`.

        Adding the same source for the same watcher again increments
        the registration count instead of duplicating it.
        """
        type_ = EventType(type_)
        key = (data if type_ == EventType.PORT else _fileno(data), type_)
        ctx = self._context(mode, create=True)
        found = ctx.watchers.get(key)
        if found is not None and found.receiver is watcher:
            found.count += 1
            if limit is not None:
                found.limit = limit
        else:
            if found is not None:
                logger.warning("Replaced watcher %r of %s %r in mode %r",
                               found.receiver, type_.name, data, mode)
                found.active = False
            ctx.watchers[key] = _Watcher(key, data, type_, watcher, mode, limit)

    def remove_event(self, data, type_, mode=DEFAULT_MODE, all=False):
        """ Decrements the registration count of the event source `data`
        of type `type_` in `mode` and removes it on zero or at once if
        `all` is set. Removing an unknown source does nothing.
        """
        type_ = EventType(type_)
        ctx = self._context(mode)
        if ctx is None:
            return False
        try:
            key = (data if type_ == EventType.PORT else _fileno(data), type_)
        except (OSError, ValueError):
            return False
        found = ctx.watchers.get(key)
        if found is None:
            return False
        found.count -= 1
        if all or found.count <= 0:
            found.active = False
            del ctx.watchers[key]
        return True

    def has_event(self, data, type_, mode=DEFAULT_MODE):
        """ Returns `True` if the event source is registered for `mode`.
        """
        type_ = EventType(type_)
        ctx = self._context(mode)
        if ctx is None:
            return False
        key = (data if type_ == EventType.PORT else _fileno(data), type_)
        return key in ctx.watchers

    def add_port(self, port, mode=DEFAULT_MODE):
        """ Adds `port` as source of messages while running in `mode`.
        """
        if port.valid:
            if not self.has_event(port, EventType.PORT, mode):
                port._attach(self, mode)
            self.add_event(port, EventType.PORT, port, mode)

    def remove_port(self, port, mode=DEFAULT_MODE):
        """ Removes `port` from `mode`, this doesn't invalidate it.
        """
        if self.remove_event(port, EventType.PORT, mode):
            if not self.has_event(port, EventType.PORT, mode):
                port._detach(self, mode)

    def _drop_descriptor(self, fd):
        dropped = list()
        for ctx in self._contexts.values():
            for key in [key for key in ctx.watchers if key[0] == fd]:
                watcher = ctx.watchers.pop(key)
                watcher.active = False
                dropped.append(watcher)
        return dropped

    # performers

    def perform(self, callback, argument=None, order=0, modes=(DEFAULT_MODE,)):
        """ Sets up to call `callback(argument)` once, at the start of
        the next pass in any of `modes`. Calls with lower `order` go first.
        """
        assert callable(callback)
        performer = _Performer(callback, argument, order, next(self._sequence))
        for mode in modes:
            self._context(mode, create=True).performers.append(performer)

    def cancel_perform(self, callback, argument=None):
        """ Cancels queued calls of `callback` with `argument`.
        """
        for ctx in self._contexts.values():
            for performer in ctx.performers:
                if performer.callback == callback and performer.argument == argument:
                    performer.active = False
            ctx.prune()

    def cancel_performs(self, target):
        """ Cancels all queued calls of methods of `target`.
        """
        for ctx in self._contexts.values():
            for performer in ctx.performers:
                if performer.matches_target(target):
                    performer.active = False
            ctx.prune()

    def _run_performers(self, mode):
        queued = dict()
        for ctx in self._contexts_for(mode):
            ctx.prune()
            for performer in ctx.performers:
                queued[id(performer)] = performer
        for performer in sorted(queued.values(), key=lambda item: (item.order, item.seq)):
            if performer.active:
                performer.active = False
                try:
                    performer.callback(performer.argument)
                except Exception:
                    logger.exception("Exception when performing %r", performer.callback)

    # dispatching

    def limit_date_for_mode(self, mode):
        """ Returns the nearest date at which a source of `mode` must
        be serviced, `DISTANT_FUTURE` if no source has a date or `None`
        if nothing is registered for `mode`.
        """
        found = False
        limit = DISTANT_FUTURE
        for ctx in self._contexts_for(mode):
            ctx.prune()
            if ctx.performers:
                return time()
            for timer in ctx.timers:
                found = True
                if timer.fire_date < limit:
                    limit = timer.fire_date
            for watcher in ctx.watchers.values():
                found = True
                if watcher.limit is not None and watcher.limit < limit:
                    limit = watcher.limit
        return limit if found else None

    def accept_input_for_mode(self, mode, limit=None):
        """ Performs one pass: waits until `limit`, the nearest timer date
        or any registered source of `mode` becomes ready, then fires due
        timers (earliest first) and delivers one event per ready source.
        """
        limit = DISTANT_FUTURE if limit is None else limit
        self._mode_stack.append(mode)
        try:
            self._run_performers(mode)
            when = self.limit_date_for_mode(mode)
            if when is None:
                return
            deadline = when if when < limit else limit

            watchers = dict()
            for ctx in self._contexts_for(mode):
                for key, watcher in ctx.watchers.items():
                    watchers.setdefault(key, watcher)
            watchers = list(watchers.values())

            fds = dict()
            port_fds = dict()
            for watcher in watchers:
                if watcher.type == EventType.PORT:
                    port = watcher.data
                    port_fds[watcher] = port.get_fds()
                    for fd, events in port_fds[watcher].items():
                        fds[fd] = fds.get(fd, 0) | events
                    if port.ready_to_deliver():
                        deadline = 0
                else:
                    fd = watcher.key[0]
                    fds[fd] = fds.get(fd, 0) | _MASKS[watcher.type]

            events = self._wait(fds, deadline)
            self._fire_timers(mode)
            self._check_limits(watchers, mode)
            self._dispatch(watchers, port_fds, events, mode)
        finally:
            self._mode_stack.pop()

    def _wait(self, fds, deadline):
        while True:
            timeout = seconds_until(deadline)
            if timeout is not None and timeout > MAX_WAIT:
                timeout = MAX_WAIT
            try:
                return self._poll(fds, timeout)
            except InterruptedError:
                continue
            except OSError as exc:
                if errno_from_exception(exc) == errno.EINTR:
                    continue
                raise

    def _poll(self, fds, timeout):
        ready = {fd: INVALID for fd in fds if fd < 0}
        fds = {fd: events for fd, events in fds.items() if fd >= 0}
        if hasattr(select, 'poll'):
            poller = select.poll()
            for fd, events in fds.items():
                poller.register(fd, events)
            if ready:
                timeout = 0
            timeout = None if timeout is None else int(math.ceil(timeout * 1000))
            for fd, revents in poller.poll(timeout):
                ready[fd] = revents
            return ready
        if not fds:
            if not ready and timeout is None:
                raise RuntimeError("Nothing to wait for a distant future")
            if not ready:
                sleep(timeout)
            return ready
        rlist = [fd for fd, events in fds.items() if events & READ]
        wlist = [fd for fd, events in fds.items() if events & WRITE]
        xlist = list(fds)
        try:
            rlist, wlist, xlist = select.select(rlist, wlist, xlist, 0 if ready else timeout)
        except OSError as exc:
            if errno_from_exception(exc) != errno.EBADF:
                raise
            return self._find_invalid(fds, ready)
        for fd in rlist:
            ready[fd] = ready.get(fd, 0) | READ
        for fd in wlist:
            ready[fd] = ready.get(fd, 0) | WRITE
        for fd in xlist:
            ready[fd] = ready.get(fd, 0) | (EXCEPT if fds[fd] & EXCEPT else ERROR)
        return ready

    def _find_invalid(self, fds, ready):
        for fd in fds:
            try:
                select.select([fd], [], [], 0)
            except OSError:
                ready[fd] = INVALID
        return ready

    def _fire_timers(self, mode):
        now = time()
        due = dict()
        for ctx in self._contexts_for(mode):
            for timer in ctx.timers:
                if timer.valid and timer.fire_date <= now:
                    due[id(timer)] = timer
        for timer in sorted(due.values(), key=lambda item: item.fire_date):
            if not timer.valid:
                continue
            if not any(timer in ctx.timers for ctx in self._contexts_for(mode)):
                continue
            if timer.repeats:
                next_date = timer.fire_date + timer.interval
                timer.fire_date = next_date if next_date > now else now
            try:
                timer.fire()
            except Exception:
                logger.exception("Exception when firing %r", timer)

    def _check_limits(self, watchers, mode):
        now = time()
        for watcher in watchers:
            if watcher.active and watcher.limit is not None and watcher.limit <= now:
                limit = None
                timed_out_event = getattr(watcher.receiver, 'timed_out_event', None)
                try:
                    if timed_out_event is not None:
                        limit = timed_out_event(watcher.data, watcher.type, mode)
                except Exception:
                    logger.exception("Exception when timing out %r", watcher.receiver)
                if not watcher.active:
                    continue
                if limit is None:
                    self.remove_event(watcher.data, watcher.type, watcher.mode, all=True)
                else:
                    watcher.limit = limit

    def _dispatch(self, watchers, port_fds, events, mode):
        for fd, revents in events.items():
            if revents & INVALID:
                for watcher in self._drop_descriptor(fd):
                    logger.warning("Dropped invalid descriptor %s of %r", fd, watcher.receiver)
                    self._notify(watcher, revents | ERROR, mode)

        for watcher in watchers:
            if not watcher.active:
                continue
            if watcher.type == EventType.PORT:
                port = watcher.data
                ready = {fd: events[fd] for fd in port_fds[watcher] if fd in events}
                if port.valid and (ready or port.ready_to_deliver()):
                    self._notify(watcher, ready, mode)
            else:
                revents = events.get(watcher.key[0], 0)
                if revents & (_MASKS[watcher.type] | ERROR):
                    self._notify(watcher, revents, mode)

    def _notify(self, watcher, extra, mode):
        try:
            watcher.receiver.received_event(watcher.data, watcher.type, extra, mode)
        except Exception:
            logger.exception("Exception when handling %s event of %r",
                             watcher.type.name, watcher.receiver)

    # running

    def run_mode(self, mode, before=None):
        """ Runs passes in `mode` until `before` is passed or no sources
        are left. Returns `False` if nothing was registered for `mode`.
        """
        before = DISTANT_FUTURE if before is None else before
        if self.limit_date_for_mode(mode) is None:
            return False
        while True:
            self.accept_input_for_mode(mode, before)
            if time() >= before or self.limit_date_for_mode(mode) is None:
                return True

    def run_until_date(self, date):
        """ Runs the default mode until `date` or while it has sources.
        """
        self.run_mode(DEFAULT_MODE, date)

    def run(self):
        """ Runs the default mode while it has sources.
        """
        self.run_until_date(DISTANT_FUTURE)
