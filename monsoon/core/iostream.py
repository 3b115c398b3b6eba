""" Byte streams scheduled in a run loop
"""
import os
import socket
import weakref
from enum import IntEnum

from monsoon.core.abc import RunLoopEvents, StreamDelegate
from monsoon.core.runloop import EventType, DEFAULT_MODE, READ, ERROR
from monsoon.core.utils import logger, make_addr, would_block
from monsoon.core.utils import BACKLOG, BLOCK_SIZE
from monsoon.core.utils import listen_sockets, listen_unix_socket
from monsoon.core.utils import connect_socket, unlink_quietly

DATA_WRITTEN_TO_MEMORY_STREAM_KEY = 'DataWrittenToMemoryStream'
FILE_CURRENT_OFFSET_KEY = 'FileCurrentOffset'


class StreamStatus(IntEnum):
    NOT_OPEN = 0
    OPENING = 1
    OPEN = 2
    READING = 3
    WRITING = 4
    AT_END = 5
    CLOSED = 6
    ERROR = 7


class StreamEvent(IntEnum):
    NONE = 0
    OPEN_COMPLETED = 1
    HAS_BYTES_AVAILABLE = 2
    HAS_SPACE_AVAILABLE = 4
    ERROR_OCCURRED = 8
    END_ENCOUNTERED = 16


_ACTIVE = (StreamStatus.OPEN, StreamStatus.READING, StreamStatus.WRITING)


class Stream(StreamDelegate):
    """ Base byte stream.

    Events of a stream are delivered to its delegate once for every
    (run loop, mode) pair the stream is scheduled in, while that run
    loop runs in that mode. A stream which isn't scheduled anywhere
    delivers no events.
    """

    def __init__(self):
        self._status = StreamStatus.NOT_OPEN
        self._error = None
        self._delegate = None
        self._properties = dict()
        self._schedules = list()
        self._pending = set()
        self._watching = set()

    def __repr__(self):
        return '<{} at {:#x} status={}>'.format(
            self.__class__.__name__, id(self), self._status.name)

    @property
    def delegate(self):
        """ Receiver of the stream events, the stream itself by default. """
        return self._delegate if self._delegate is not None else self

    @delegate.setter
    def delegate(self, value):
        self._delegate = value

    @property
    def stream_status(self):
        return self._status

    @property
    def stream_error(self):
        """ Exception which has moved this stream to the error status. """
        return self._error

    @property
    def run_loops(self):
        """ List of (run loop, mode) pairs this stream is scheduled in. """
        result = list()
        for loop_ref, mode in self._schedules:
            loop = loop_ref()
            if loop is not None:
                result.append((loop, mode))
        return result

    def property_for_key(self, key):
        return self._properties.get(key)

    def set_property(self, value, key):
        """ Sets the property `key`. Returns `True` on success.
        """
        self._properties[key] = value
        return True

    def handle_event(self, stream, event):
        """ Does nothing, see for detail `StreamDelegate.handle_event` """

    @classmethod
    def get_streams_to_host(cls, host, port):
        """ Returns a pair of input and output streams connecting to
        `host`:`port`. Connection starts at once, both streams report
        `OPEN_COMPLETED` when opened and connected.
        """
        return _connected_streams((host, port))

    @classmethod
    def get_local_streams_to_path(cls, path):
        """ Returns a pair of input and output streams connecting to
        the unix domain socket `path`.
        """
        return _connected_streams(path)

    @classmethod
    def pipe(cls):
        """ Returns an already open pair of input and output streams,
        bytes written to the output stream are read from the input one.
        """
        rx, tx = socket.socketpair()
        input_ = SocketInputStream(_Connection(rx))
        output = SocketOutputStream(_Connection(tx))
        input_._status = output._status = StreamStatus.OPEN
        return input_, output

    def open(self):
        """ Opens this stream, does nothing if it was opened already.
        """
        if self._status == StreamStatus.NOT_OPEN:
            try:
                self._open()
            except OSError as exc:
                self._record_error(exc)

    def close(self):
        """ Closes this stream, which doesn't deliver events after that.
        """
        if self._status != StreamStatus.CLOSED:
            for type_ in tuple(self._watching):
                self._unwatch(type_)
            for loop, _ in self.run_loops:
                loop.cancel_performs(self)
            self._pending.clear()
            self._status = StreamStatus.CLOSED
            self._close()

    def schedule_in_run_loop(self, loop, mode=DEFAULT_MODE):
        """ Sets up to deliver events of this stream while `loop` runs in `mode`.
        """
        for loop_, mode_ in self.run_loops:
            if loop_ is loop and mode_ == mode:
                return
        self._schedules.append((weakref.ref(loop), mode))
        for type_ in self._watching:
            loop.add_event(self._fileno(), type_, self._watcher(), mode)
        if self._status in _ACTIVE:
            self._signal()

    def remove_from_run_loop(self, loop, mode=DEFAULT_MODE):
        schedules = [(loop_ref, mode_) for loop_ref, mode_ in self._schedules
                     if not (loop_ref() is loop and mode_ == mode)]
        if len(schedules) < len(self._schedules):
            self._schedules = schedules
            for type_ in self._watching:
                loop.remove_event(self._fileno(), type_, mode)
            self._pending = {key for key in self._pending if key[:2] != (id(loop), mode)}

    def _open(self):
        self._opened()

    def _opened(self):
        self._status = StreamStatus.OPEN
        self._send_event(StreamEvent.OPEN_COMPLETED)
        self._signal()

    def _close(self):
        """ Called once to release resources on closing. """

    def _signal(self):
        """ Announces availability of bytes or space. """

    def _send_event(self, event):
        for loop, mode in self.run_loops:
            key = (id(loop), mode, event)
            if key not in self._pending:
                self._pending.add(key)
                loop.perform(self._deliver, key, modes=(mode,))

    def _deliver(self, key):
        if key in self._pending:
            self._pending.discard(key)
            self.delegate.handle_event(self, StreamEvent(key[2]))

    def _fileno(self):
        raise NotImplementedError("Stream has no descriptor to watch")

    def _watcher(self):
        return self

    def _watch(self, type_):
        if type_ not in self._watching:
            self._watching.add(type_)
            for loop, mode in self.run_loops:
                loop.add_event(self._fileno(), type_, self._watcher(), mode)

    def _unwatch(self, type_):
        if type_ in self._watching:
            self._watching.discard(type_)
            for loop, mode in self.run_loops:
                loop.remove_event(self._fileno(), type_, mode)

    def _record_error(self, exc):
        logger.warning("%r has failed: %s", self, exc)
        for type_ in tuple(self._watching):
            self._unwatch(type_)
        self._error = exc
        self._status = StreamStatus.ERROR
        self._send_event(StreamEvent.ERROR_OCCURRED)

    def _reach_end(self):
        if self._status != StreamStatus.AT_END:
            for type_ in tuple(self._watching):
                self._unwatch(type_)
            self._status = StreamStatus.AT_END
            self._send_event(StreamEvent.END_ENCOUNTERED)


class InputStream(Stream):
    """ Base input stream
    """

    @classmethod
    def with_data(cls, data):
        return MemoryInputStream(data)

    @classmethod
    def with_file_at_path(cls, path):
        return FileInputStream(path)

    def read(self, max_length=BLOCK_SIZE):
        """ Reads available bytes, but not more `max_length`.

        Returns:
            block of read bytes, empty if nothing is available
            right now or stream isn't open.
        """
        if self._status not in _ACTIVE or max_length <= 0:
            return b''
        self._status = StreamStatus.READING
        try:
            data = self._read(max_length)
        except OSError as exc:
            self._record_error(exc)
            return b''
        if data is not None and len(data) == 0:
            self._reach_end()
            return b''
        self._status = StreamStatus.OPEN
        self._signal()
        return data or b''

    def _read(self, max_length):
        """ Returns read bytes, empty bytes on the end of stream
        or `None` if reading would block.
        """
        raise NotImplementedError("Method `_read` must be implemented")

    def get_buffer(self):
        """ Returns bytes which can be read without copying or `None`. """
        return None

    def has_bytes_available(self):
        return self._status in _ACTIVE


class OutputStream(Stream):
    """ Base output stream
    """

    @classmethod
    def to_memory(cls):
        return MemoryOutputStream()

    @classmethod
    def to_buffer(cls, buffer, capacity=None):
        """ Returns stream appending to `buffer`, which reaches the end
        after `capacity` bytes have been written.
        """
        return MemoryOutputStream(buffer, capacity)

    @classmethod
    def to_file_at_path(cls, path, append=False):
        return FileOutputStream(path, append)

    def write(self, data):
        """ Writes as much of `data` as possible.

        Returns:
            number of written bytes or -1 on error.
        """
        if self._status not in _ACTIVE or not data:
            return 0
        self._status = StreamStatus.WRITING
        try:
            written = self._write(data)
        except OSError as exc:
            self._record_error(exc)
            return -1
        self._status = StreamStatus.OPEN
        self._signal()
        return written or 0

    def _write(self, data):
        """ Returns number of written bytes or `None` if writing would block.
        """
        raise NotImplementedError("Method `_write` must be implemented")

    def has_space_available(self):
        return self._status in _ACTIVE


class MemoryInputStream(InputStream):
    """ Input stream reading given bytes
    """

    def __init__(self, data):
        super().__init__()
        self._data = bytes(data)
        self._offset = 0

    def _read(self, max_length):
        chunk = self._data[self._offset:self._offset + max_length]
        self._offset += len(chunk)
        return chunk

    def _signal(self):
        if self._offset < len(self._data):
            self._send_event(StreamEvent.HAS_BYTES_AVAILABLE)
        else:
            self._reach_end()

    def get_buffer(self):
        return self._data[self._offset:]

    def has_bytes_available(self):
        return super().has_bytes_available() and self._offset < len(self._data)


class MemoryOutputStream(OutputStream):
    """ Output stream collecting bytes in memory
    """

    def __init__(self, buffer=None, capacity=None):
        super().__init__()
        self._buffer = buffer if buffer is not None else bytearray()
        self._capacity = capacity
        self._written = 0

    def _write(self, data):
        if self._capacity is not None:
            data = data[:max(self._capacity - self._written, 0)]
        self._buffer += data
        self._written += len(data)
        return len(data)

    def _signal(self):
        if self._capacity is None or self._written < self._capacity:
            self._send_event(StreamEvent.HAS_SPACE_AVAILABLE)
        else:
            self._reach_end()

    def property_for_key(self, key):
        if key == DATA_WRITTEN_TO_MEMORY_STREAM_KEY:
            return bytes(self._buffer)
        return super().property_for_key(key)


class _FileStream(object):
    """ Common part of the file streams """
    _fd = None

    def _signal(self):
        self._send_event(self._available)

    def _close(self):
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    def property_for_key(self, key):
        if key == FILE_CURRENT_OFFSET_KEY:
            return os.lseek(self._fd, 0, os.SEEK_CUR) if self._fd is not None else None
        return super().property_for_key(key)

    def set_property(self, value, key):
        if key == FILE_CURRENT_OFFSET_KEY:
            if self._fd is None:
                return False
            os.lseek(self._fd, value, os.SEEK_SET)
            return True
        return super().set_property(value, key)


class FileInputStream(_FileStream, InputStream):
    """ Input stream reading a file
    """
    _available = StreamEvent.HAS_BYTES_AVAILABLE

    def __init__(self, path):
        super().__init__()
        self._path = path

    def _open(self):
        self._fd = os.open(self._path, os.O_RDONLY)
        self._opened()

    def _read(self, max_length):
        return os.read(self._fd, max_length)


class FileOutputStream(_FileStream, OutputStream):
    """ Output stream writing a file
    """
    _available = StreamEvent.HAS_SPACE_AVAILABLE

    def __init__(self, path, append=False):
        super().__init__()
        self._path = path
        self._append = append

    def _open(self):
        flags = os.O_WRONLY | os.O_CREAT | (os.O_APPEND if self._append else os.O_TRUNC)
        self._fd = os.open(self._path, flags, 0o644)
        self._opened()

    def _write(self, data):
        return os.write(self._fd, data)


class _Connection(RunLoopEvents):
    """ Socket shared by the streams of one connection
    """

    def __init__(self, socket_, target=None, *, connecting=False, error=None):
        if socket_ is not None:
            socket_.setblocking(False)
        self.socket = socket_
        self.fd = socket_.fileno() if socket_ is not None else None
        self.target = target
        self.connecting = connecting
        self.error = error
        self.streams = list()

    def received_event(self, data, type_, extra, mode):
        """ See for detail `RunLoopEvents.received_event` """
        if self.connecting:
            self.finish_connect()
            return
        for stream in tuple(self.streams):
            if stream._ready_type == type_:
                stream._ready(extra)

    def finish_connect(self):
        self.connecting = False
        errno_ = self.socket.getsockopt(socket.SOL_SOCKET, socket.SO_ERROR)
        if errno_:
            self.error = OSError(errno_, os.strerror(errno_))
            logger.warning("Cannot connect to %s: %s", make_addr(self.target), self.error)
        else:
            logger.debug("Connected to %s", make_addr(self.target))
        for stream in tuple(self.streams):
            if stream.stream_status == StreamStatus.OPENING:
                stream._connected(self.error)

    def release(self, stream, how):
        if stream in self.streams:
            self.streams.remove(stream)
            if self.socket is not None:
                try:
                    self.socket.shutdown(how)
                except OSError:
                    pass
                if not self.streams:
                    self.socket.close()


class _SocketStream(object):
    """ Common part of the socket streams """

    def __init__(self, connection):
        super().__init__()
        self._connection = connection
        connection.streams.append(self)

    @property
    def peer_address(self):
        return make_addr(self._connection.target)

    def _fileno(self):
        return self._connection.fd

    def _watcher(self):
        return self._connection

    def _open(self):
        connection = self._connection
        if connection.error is not None:
            raise connection.error
        if connection.connecting:
            self._status = StreamStatus.OPENING
            self._watch(EventType.WRITE)
        else:
            self._opened()

    def _connected(self, error):
        self._unwatch(EventType.WRITE)
        if error is not None:
            self._record_error(error)
        else:
            self._opened()

    def _ready(self, revents):
        self._unwatch(self._ready_type)
        self._send_event(self._available)

    def _signal(self):
        self._watch(self._ready_type)

    def _close(self):
        self._connection.release(self, self._shutdown)


class SocketInputStream(_SocketStream, InputStream):
    """ Input stream reading a socket
    """
    _ready_type = EventType.READ
    _available = StreamEvent.HAS_BYTES_AVAILABLE
    _shutdown = socket.SHUT_RD

    def _read(self, max_length):
        try:
            return self._connection.socket.recv(max_length)
        except OSError as exc:
            if would_block(exc):
                return None
            raise


class SocketOutputStream(_SocketStream, OutputStream):
    """ Output stream writing a socket
    """
    _ready_type = EventType.WRITE
    _available = StreamEvent.HAS_SPACE_AVAILABLE
    _shutdown = socket.SHUT_WR

    def _write(self, data):
        try:
            return self._connection.socket.send(data)
        except OSError as exc:
            if would_block(exc):
                return None
            raise


def _connected_streams(target):
    try:
        socket_, connected = connect_socket(target)
        connection = _Connection(socket_, target, connecting=not connected)
    except OSError as exc:
        logger.warning("Cannot connect to %s: %s", make_addr(target), exc)
        connection = _Connection(None, target, error=exc)
    return SocketInputStream(connection), SocketOutputStream(connection)


class ServerStream(Stream, RunLoopEvents):
    """ Stream accepting connections.

    Incoming connections are signalled with `HAS_BYTES_AVAILABLE`,
    each `accept` returns an already open pair of socket streams.
    """

    def __init__(self, address=None, port=0, *, path=None,
                 backlog=BACKLOG, family=socket.AF_INET):
        super().__init__()
        self._address = address
        self._port = port
        self._path = path
        self._backlog = backlog
        self._family = family
        self._socket = None

    @classmethod
    def to_addr(cls, addr, port, **kwargs):
        return cls(addr, port, **kwargs)

    @classmethod
    def to_local(cls, path, **kwargs):
        return cls(path=path, **kwargs)

    @property
    def local_address(self):
        """ Address of the listening socket or `None` if it isn't open. """
        if self._socket is None:
            return None
        return make_addr(self._socket.getsockname())

    @property
    def port_number(self):
        if self._socket is None or self._path is not None:
            return None
        return self._socket.getsockname()[1]

    def _open(self):
        if self._path is not None:
            self._socket = listen_unix_socket(self._path, backlog=self._backlog)
        else:
            sockets = listen_sockets(self._port, self._address,
                                     family=self._family, backlog=self._backlog)
            self._socket = sockets[0]
            for socket_ in sockets[1:]:
                socket_.close()
        self._opened()

    def _fileno(self):
        return self._socket.fileno()

    def _signal(self):
        self._watch(EventType.READ)

    def received_event(self, data, type_, extra, mode):
        """ See for detail `RunLoopEvents.received_event` """
        if extra & ERROR and not extra & READ:
            self._record_error(OSError("Listening socket {} has failed".format(self.local_address)))
        else:
            self._unwatch(EventType.READ)
            self._send_event(StreamEvent.HAS_BYTES_AVAILABLE)

    def accept(self):
        """ Accepts pending connection.

        Returns:
            open pair of input and output streams or `(None, None)`
            if no connection is pending.
        """
        if self._status not in _ACTIVE:
            return None, None
        try:
            socket_, address = self._socket.accept()
        except OSError as exc:
            if would_block(exc):
                self._signal()
            else:
                self._record_error(exc)
            return None, None
        self._signal()
        logger.debug("%r accepted connection from %s", self, make_addr(address))
        connection = _Connection(socket_, address or self._path)
        input_, output = SocketInputStream(connection), SocketOutputStream(connection)
        input_._status = output._status = StreamStatus.OPEN
        return input_, output

    def _close(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None
            if self._path is not None:
                unlink_quietly(self._path)
