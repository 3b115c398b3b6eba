""" Socket ports
"""
import os
import errno
import socket
import struct
import weakref
from time import time

from tornado.util import errno_from_exception

from monsoon.core.port import Port, PortMessage
from monsoon.core.runloop import RunLoop, READ, WRITE, ERROR
from monsoon.core.utils import logger, make_addr, would_block
from monsoon.core.utils import BACKLOG, BLOCK_SIZE, DISTANT_FUTURE
from monsoon.core.utils import listen_sockets, listen_unix_socket
from monsoon.core.utils import connect_socket, close_socket, unlink_quietly

HEADER = struct.Struct('!I')
MAX_FRAME_SIZE = 16 * 1024 * 1024
SEND_MODE = 'monsoon.SocketPortSendMode'


class FramingError(IOError):
    def __init__(self, msg=None):
        super().__init__(msg or "Malformed frame")


def encode_frame(data):
    """ Returns `data` prefixed with its length header.
    """
    return HEADER.pack(len(data)) + bytes(data)


class SocketHandle(object):
    """ Live connection of a socket port
    """
    CONNECTING = 'connecting'
    OPEN = 'open'
    CLOSED = 'closed'

    def __init__(self, port, socket_, address, *, connecting=False,
                 block_size=BLOCK_SIZE, max_frame_size=MAX_FRAME_SIZE):
        socket_.setblocking(False)
        self._port = port
        self._socket = socket_
        self._fd = socket_.fileno()
        self._address = make_addr(address)
        self._block_size = block_size
        self._max_frame_size = max_frame_size
        self._inbuf = bytearray()
        self._outbuf = bytearray()
        self._state = self.CONNECTING if connecting else self.OPEN
        self._read_closed = False

    def __repr__(self):
        return '<{} fd={} peer={} state={}>'.format(
            self.__class__.__name__, self._fd, self._address, self._state)

    @property
    def fd(self):
        return self._fd

    @property
    def address(self):
        """ Address of the peer """
        return self._address

    @property
    def state(self):
        return self._state

    @property
    def read_closed(self):
        """ Returns `True` if the peer has finished sending """
        return self._read_closed

    @property
    def pending(self):
        """ Number of bytes waiting to be sent """
        return len(self._outbuf)

    @property
    def events(self):
        """ Event mask to wait for """
        if self._state == self.CONNECTING:
            return WRITE
        events = 0 if self._read_closed else READ
        return events | WRITE if self._outbuf else events

    def finish_connect(self):
        error = self._socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if error:
            raise OSError(error, os.strerror(error))
        self._state = self.OPEN

    def receive(self):
        """ Reads available bytes to the incoming buffer.

        Returns:
            `False` if the peer has closed connection.
        """
        if self._read_closed:
            return False
        try:
            data = self._socket.recv(self._block_size)
        except OSError as exc:
            if would_block(exc):
                return True
            raise
        if not data:
            self._read_closed = True
            return False
        self._inbuf += data
        return True

    def has_frame(self):
        """ Returns `True` if a whole frame (or a broken one) is buffered.
        """
        if len(self._inbuf) < HEADER.size:
            return False
        length, = HEADER.unpack_from(self._inbuf)
        return length > self._max_frame_size or len(self._inbuf) >= HEADER.size + length

    def next_frame(self):
        """ Pops the payload of the next whole frame or returns `None`.

        Raises:
            FramingError: frame length exceeds the limit.
        """
        if len(self._inbuf) < HEADER.size:
            return None
        length, = HEADER.unpack_from(self._inbuf)
        if length > self._max_frame_size:
            raise FramingError("Frame of {} bytes exceeds limit of {}"
                               "".format(length, self._max_frame_size))
        end = HEADER.size + length
        if len(self._inbuf) < end:
            return None
        frame = bytes(self._inbuf[HEADER.size:end])
        del self._inbuf[:end]
        return frame

    def enqueue(self, data):
        self._outbuf += encode_frame(data)

    def flush(self):
        """ Writes as much of the outgoing buffer as possible.
        """
        while self._state == self.OPEN and self._outbuf:
            try:
                sent = self._socket.send(self._outbuf)
            except OSError as exc:
                if would_block(exc):
                    return
                raise
            del self._outbuf[:sent]

    def send(self, data):
        """ Sends `data` as one frame over this connection.
        """
        return self._port._send_on(self, data)

    def close(self):
        if self._state != self.CLOSED:
            self._state = self.CLOSED
            self._inbuf.clear()
            self._outbuf.clear()
            close_socket(self._socket)


class SocketPort(Port):
    """ Port over TCP or unix domain sockets.

    A listening port accepts connections and delivers every frame which
    arrives over them. Sending to a port connects to its address.
    Each frame is a 4-byte big-endian length followed by the payload.
    """
    _registry = weakref.WeakValueDictionary()

    def __init__(self, number=0, host=None, address=None, *, listener=True, path=None,
                 delegate=None, backlog=BACKLOG, family=socket.AF_INET,
                 block_size=BLOCK_SIZE, max_frame_size=MAX_FRAME_SIZE):
        super().__init__(delegate)
        self._host = host
        self._address = address
        self._path = path
        self._family = socket.AF_UNIX if path is not None else family
        self._block_size = block_size
        self._max_frame_size = max_frame_size
        self._listeners = list()
        self._handles = dict()
        self._outgoing = None
        self._turn = 0
        if listener:
            if path is not None:
                self._listeners.append(listen_unix_socket(path, backlog=backlog))
            else:
                self._listeners.extend(listen_sockets(number, address or host,
                                                      family=family, backlog=backlog))
                number = self._listeners[0].getsockname()[1]
        self._number = number
        self._key = self._make_key(number, host, path)
        if listener or self.existing(number, host, path=path) is None:
            self._registry[self._key] = self

    def __repr__(self):
        where = self._path if self._path is not None else make_addr((self._host, self._number))
        return '<{} {} listener={} valid={}>'.format(
            self.__class__.__name__, where, self.listening, self._valid)

    @staticmethod
    def _make_key(number, host=None, path=None):
        return ('unix', path) if path is not None else (host, number)

    @classmethod
    def existing(cls, number, host=None, *, path=None):
        """ Returns the valid port registered for `number` on `host`
        (or for unix socket `path`) or `None`.
        """
        port = cls._registry.get(cls._make_key(number, host, path))
        return port if port is not None and port.valid else None

    @classmethod
    def port_with_number(cls, number, host=None, address=None, *, listener=True, **kwargs):
        """ Returns existing port for `number` on `host` or creates new one.
        """
        port = cls.existing(number, host) if number else None
        if port is None or (listener and not port.listening):
            port = cls(number, host, address, listener=listener, **kwargs)
        return port

    @classmethod
    def local(cls, path, *, listener=True, **kwargs):
        """ Returns port over unix domain socket `path`.
        """
        port = cls.existing(0, path=path)
        if port is None or (listener and not port.listening):
            port = cls(path=path, listener=listener, **kwargs)
        return port

    @property
    def port_number(self):
        return self._number

    @property
    def host(self):
        return self._host

    @property
    def address(self):
        """ Forced internet address """
        return self._address

    @property
    def path(self):
        return self._path

    @property
    def listening(self):
        """ Returns `True` if this port accepts connections """
        return len(self._listeners) > 0

    @property
    def handles(self):
        """ Live connections """
        return tuple(self._handles.values())

    def get_fds(self):
        """ See for detail `Port.get_fds` """
        fds = {listener.fileno(): READ for listener in self._listeners}
        for fd, handle in self._handles.items():
            events = handle.events
            if events:
                fds[fd] = events
        return fds

    def ready_to_deliver(self):
        """ See for detail `Port.ready_to_deliver` """
        return self._valid and any(handle.has_frame() for handle in self._handles.values())

    def received_event(self, data, type_, extra, mode):
        """ See for detail `RunLoopEvents.received_event` """
        if not self._valid:
            return
        listeners = {listener.fileno(): listener for listener in self._listeners}
        for fd, revents in (extra or {}).items():
            if fd in listeners:
                if revents & ERROR:
                    logger.error("Listening socket of %r has failed", self)
                    self.invalidate()
                    return
                self._accept(listeners[fd])
                continue
            handle = self._handles.get(fd)
            if handle is None:
                continue
            try:
                if handle.state == SocketHandle.CONNECTING:
                    handle.finish_connect()
                if revents & WRITE or (revents & ERROR and handle.read_closed):
                    handle.flush()
                if revents & (READ | ERROR) and not handle.read_closed:
                    handle.receive()
                self._finish(handle)
            except OSError as exc:
                self._close_handle(handle, exc)
        self._deliver_one()

    def _accept(self, listener):
        for _ in range(128):
            try:
                socket_, address = listener.accept()
            except OSError as exc:
                if would_block(exc):
                    return
                if errno_from_exception(exc) == errno.ECONNABORTED:
                    continue
                logger.error("Exception while listening: %s", exc)
                return
            handle = SocketHandle(self, socket_, address or self._path,
                                  block_size=self._block_size,
                                  max_frame_size=self._max_frame_size)
            self._handles[handle.fd] = handle
            logger.debug("%r accepted connection from %s", self, handle.address)

    def _deliver_one(self):
        handles = list(self._handles.values())
        if not handles:
            return False
        start = self._turn % len(handles)
        for index in range(len(handles)):
            handle = handles[(start + index) % len(handles)]
            try:
                frame = handle.next_frame()
            except FramingError as exc:
                self._close_handle(handle, exc)
                continue
            if frame is not None:
                self._turn = start + index + 1
                self.handle_port_message(PortMessage(frame, self, address=handle.address,
                                                     reply=handle.send))
                self._finish(handle)
                return True
            self._finish(handle)
        return False

    def _finish(self, handle):
        # a half-closed connection lives until its frames and replies are out
        if (handle.read_closed and handle.state != SocketHandle.CLOSED and
                not handle.has_frame() and not handle.pending):
            self._close_handle(handle)

    def _close_handle(self, handle, exc=None):
        if self._handles.get(handle.fd) is handle:
            del self._handles[handle.fd]
        if self._outgoing is handle:
            self._outgoing = None
        handle.close()
        if exc is not None:
            logger.warning("Connection with %s of %r has failed: %s", handle.address, self, exc)
        else:
            logger.debug("Connection with %s of %r closed", handle.address, self)

    def _connect(self):
        if self._path is not None:
            target = self._path
        else:
            target = (self._address or self._host or '127.0.0.1', self._number)
        socket_, connected = connect_socket(target, self._family)
        handle = SocketHandle(self, socket_, target, connecting=not connected,
                              block_size=self._block_size,
                              max_frame_size=self._max_frame_size)
        self._handles[handle.fd] = handle
        self._outgoing = handle
        return handle

    def _send_on(self, handle, data):
        if not self._valid or handle.state == SocketHandle.CLOSED:
            return False
        handle.enqueue(data)
        try:
            handle.flush()
        except OSError as exc:
            self._close_handle(handle, exc)
            return False
        return True

    def send_before_date(self, data, before=None, send_port=None):
        """ Sends `data` as one frame to the address of this port. Runs the
        current thread run loop in a private mode until the frame is written
        out or `before` has passed.

        Returns:
            `True` if the whole frame has been written.
        """
        if not self._valid:
            return False
        before = DISTANT_FUTURE if before is None else before
        handle = self._outgoing
        if handle is None or handle.state == SocketHandle.CLOSED:
            try:
                handle = self._connect()
            except OSError as exc:
                logger.warning("%r cannot connect: %s", self, exc)
                return False
        if not self._send_on(handle, data):
            return False
        loop = RunLoop.current()
        loop.add_port(self, SEND_MODE)
        try:
            while (handle.pending and handle.state != SocketHandle.CLOSED and
                   self._valid and time() < before):
                loop.accept_input_for_mode(SEND_MODE, before)
        finally:
            loop.remove_port(self, SEND_MODE)
        return handle.state != SocketHandle.CLOSED and handle.pending == 0

    def _release(self):
        for handle in tuple(self._handles.values()):
            self._close_handle(handle)
        self._outgoing = None
        for listener in self._listeners:
            listener.close()
        if self._listeners and self._path is not None:
            unlink_quietly(self._path)
        self._listeners = list()
        if self._registry.get(self._key) is self:
            del self._registry[self._key]
