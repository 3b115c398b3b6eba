import os
import time
import socket
import tempfile
import pytest
from testfixtures import LogCapture
from monsoon.core import RunLoop, DEFAULT_MODE
from monsoon.core import Stream, InputStream, OutputStream, ServerStream
from monsoon.core import StreamStatus, StreamEvent
from monsoon.core.abc import StreamDelegate
from monsoon.core.iostream import DATA_WRITTEN_TO_MEMORY_STREAM_KEY, FILE_CURRENT_OFFSET_KEY
from monsoon.core.utils import date_after


@pytest.fixture
def callog():
    _callog = list()
    yield _callog


class Recorder(StreamDelegate):

    def __init__(self, callog, read_size=4):
        self.callog = callog
        self.read_size = read_size
        self.data = bytearray()

    def handle_event(self, stream, event):
        self.callog.append(event)
        if event == StreamEvent.HAS_BYTES_AVAILABLE and isinstance(stream, InputStream):
            self.data += stream.read(self.read_size)
        elif event in (StreamEvent.END_ENCOUNTERED, StreamEvent.ERROR_OCCURRED):
            stream.close()


def run_until(loop, predicate, timeout=2.0, mode=DEFAULT_MODE):
    deadline = date_after(timeout)
    while not predicate() and time.time() < deadline:
        loop.accept_input_for_mode(mode, deadline)
    return predicate()


def free_port():
    probe = socket.socket()
    probe.bind(('127.0.0.1', 0))
    number = probe.getsockname()[1]
    probe.close()
    return number


def test_memory_input(callog):
    stream = InputStream.with_data(b'hello world')
    delegate = Recorder(callog)
    stream.delegate = delegate
    assert stream.stream_status == StreamStatus.NOT_OPEN
    assert stream.get_buffer() == b'hello world'

    loop = RunLoop()
    stream.schedule_in_run_loop(loop)
    stream.open()
    loop.run_until_date(date_after(2.0))

    assert callog == [
        StreamEvent.OPEN_COMPLETED,
        StreamEvent.HAS_BYTES_AVAILABLE,
        StreamEvent.HAS_BYTES_AVAILABLE,
        StreamEvent.HAS_BYTES_AVAILABLE,
        StreamEvent.END_ENCOUNTERED,
    ]
    assert delegate.data == b'hello world'
    assert stream.stream_status == StreamStatus.CLOSED


def test_unscheduled_stream():
    stream = InputStream.with_data(b'abc')
    assert stream.delegate is stream
    assert stream.read() == b''

    stream.open()
    assert stream.stream_status == StreamStatus.OPEN
    assert stream.has_bytes_available()
    assert stream.read(2) == b'ab'
    assert stream.get_buffer() == b'c'
    assert stream.read(10) == b'c'
    assert stream.stream_status == StreamStatus.AT_END
    assert not stream.has_bytes_available()
    assert stream.read() == b''

    stream.close()
    stream.open()
    assert stream.stream_status == StreamStatus.CLOSED


def test_read_nothing():
    stream = InputStream.with_data(b'abc')
    stream.open()
    assert stream.read(0) == b''
    assert stream.stream_status == StreamStatus.OPEN
    assert stream.has_bytes_available()
    assert stream.read(3) == b'abc'

    input_, output = Stream.pipe()
    try:
        assert output.write(b'xyz') == 3
        assert input_.read(0) == b''
        assert input_.stream_status == StreamStatus.OPEN
        assert input_.read(-1) == b''
        assert input_.stream_status == StreamStatus.OPEN
    finally:
        input_.close()
        output.close()


def test_properties():
    stream = OutputStream.to_memory()
    assert stream.property_for_key('custom') is None
    assert stream.set_property('value', 'custom')
    assert stream.property_for_key('custom') == 'value'

    stream.open()
    assert stream.has_space_available()
    assert stream.write(b'abc') == 3
    assert stream.write(b'') == 0
    assert stream.write(b'de') == 2
    assert stream.property_for_key(DATA_WRITTEN_TO_MEMORY_STREAM_KEY) == b'abcde'


def test_memory_output_capacity(callog):
    buffer = bytearray()
    stream = OutputStream.to_buffer(buffer, 5)
    stream.delegate = Recorder(callog)
    loop = RunLoop()
    stream.schedule_in_run_loop(loop)
    stream.open()

    assert stream.write(b'abcdefgh') == 5
    assert stream.stream_status == StreamStatus.AT_END
    assert stream.write(b'x') == 0
    assert buffer == b'abcde'

    loop.run_until_date(date_after(2.0))
    assert callog == [
        StreamEvent.OPEN_COMPLETED,
        StreamEvent.HAS_SPACE_AVAILABLE,
        StreamEvent.END_ENCOUNTERED,
    ]


def test_file_streams():
    path = os.path.join(tempfile.mkdtemp(), 'stream.txt')

    output = OutputStream.to_file_at_path(path)
    assert output.property_for_key(FILE_CURRENT_OFFSET_KEY) is None
    output.open()
    assert output.write(b'hello file') == 10
    assert output.property_for_key(FILE_CURRENT_OFFSET_KEY) == 10
    output.close()

    output = OutputStream.to_file_at_path(path, append=True)
    output.open()
    assert output.write(b'!') == 1
    output.close()

    input_ = InputStream.with_file_at_path(path)
    assert not input_.set_property(6, FILE_CURRENT_OFFSET_KEY)
    input_.open()
    assert input_.set_property(6, FILE_CURRENT_OFFSET_KEY)
    assert input_.read(100) == b'file!'
    assert input_.read(100) == b''
    assert input_.stream_status == StreamStatus.AT_END
    input_.close()


def test_file_not_found(callog):
    stream = InputStream.with_file_at_path(os.path.join(tempfile.mkdtemp(), 'missing'))
    stream.delegate = Recorder(callog)
    loop = RunLoop()
    stream.schedule_in_run_loop(loop)
    with LogCapture():
        stream.open()
    assert stream.stream_status == StreamStatus.ERROR
    assert isinstance(stream.stream_error, FileNotFoundError)
    loop.run_until_date(date_after(2.0))
    assert callog == [StreamEvent.ERROR_OCCURRED]


def test_two_run_loops(callog):
    """ Event is delivered once to each run loop and mode """
    loop1, loop2 = RunLoop(), RunLoop()

    class Delegate(StreamDelegate):
        def handle_event(self, stream, event):
            callog.append(('loop1' if loop1.current_mode else 'loop2', event))

    stream = InputStream.with_data(b'data')
    stream.delegate = Delegate()
    stream.schedule_in_run_loop(loop1)
    stream.schedule_in_run_loop(loop2, 'other')
    stream.schedule_in_run_loop(loop1)
    assert len(stream.run_loops) == 2
    stream.open()

    loop1.accept_input_for_mode(DEFAULT_MODE, date_after(0.1))
    loop2.accept_input_for_mode('other', date_after(0.1))
    loop1.accept_input_for_mode(DEFAULT_MODE, date_after(0.1))
    assert callog == [
        ('loop1', StreamEvent.OPEN_COMPLETED),
        ('loop1', StreamEvent.HAS_BYTES_AVAILABLE),
        ('loop2', StreamEvent.OPEN_COMPLETED),
        ('loop2', StreamEvent.HAS_BYTES_AVAILABLE),
    ]

    callog.clear()
    stream.remove_from_run_loop(loop2, 'other')
    assert stream.read(2) == b'da'
    loop2.accept_input_for_mode('other', date_after(0.1))
    loop1.accept_input_for_mode(DEFAULT_MODE, date_after(0.1))
    assert callog == [('loop1', StreamEvent.HAS_BYTES_AVAILABLE)]


def test_pipe_round_trip():
    """ Bytes are passed exactly over partial writes and reads """
    payload = os.urandom(256 * 1024)
    received = bytearray()

    class Writer(StreamDelegate):
        offset = 0

        def handle_event(self, stream, event):
            if event == StreamEvent.HAS_SPACE_AVAILABLE:
                self.offset += max(stream.write(payload[self.offset:self.offset + 65536]), 0)
                if self.offset == len(payload):
                    stream.close()

    class Reader(StreamDelegate):

        def handle_event(self, stream, event):
            if event == StreamEvent.HAS_BYTES_AVAILABLE:
                received.extend(stream.read(4096))
            elif event == StreamEvent.END_ENCOUNTERED:
                stream.close()

    input_, output = Stream.pipe()
    assert input_.stream_status == StreamStatus.OPEN
    assert output.stream_status == StreamStatus.OPEN
    input_.delegate = Reader()
    output.delegate = Writer()
    loop = RunLoop()
    input_.schedule_in_run_loop(loop)
    output.schedule_in_run_loop(loop)

    loop.run_until_date(date_after(10.0))
    assert input_.stream_status == StreamStatus.CLOSED
    assert output.stream_status == StreamStatus.CLOSED
    assert received == payload


def test_server_stream(callog):
    loop = RunLoop()
    accepted = list()
    echo_events = list()
    received = bytearray()

    class Echo(StreamDelegate):

        def __init__(self, output):
            self.output = output

        def handle_event(self, stream, event):
            echo_events.append(event)
            if event == StreamEvent.HAS_BYTES_AVAILABLE and stream is not self.output:
                data = stream.read()
                if data:
                    self.output.write(data)
            elif event == StreamEvent.END_ENCOUNTERED:
                stream.close()
                self.output.close()

    class Acceptor(StreamDelegate):

        def handle_event(self, stream, event):
            callog.append(('server', event))
            if event == StreamEvent.HAS_BYTES_AVAILABLE:
                input_, output = stream.accept()
                if input_ is not None:
                    echo = Echo(output)
                    for stream_ in (input_, output):
                        stream_.delegate = echo
                        stream_.schedule_in_run_loop(loop)
                    accepted.append((input_, output))

    class Client(StreamDelegate):

        def handle_event(self, stream, event):
            callog.append(('client', event))
            if event == StreamEvent.OPEN_COMPLETED and stream is client_out:
                stream.write(b'ping')
            elif event == StreamEvent.HAS_BYTES_AVAILABLE and stream is client_in:
                received.extend(stream.read())

    server = ServerStream.to_addr('127.0.0.1', 0)
    server.delegate = Acceptor()
    server.schedule_in_run_loop(loop)
    server.open()
    assert server.stream_status == StreamStatus.OPEN
    assert server.port_number > 0
    assert server.accept() == (None, None)

    client_in, client_out = Stream.get_streams_to_host('127.0.0.1', server.port_number)
    try:
        for stream in (client_in, client_out):
            stream.delegate = Client()
            stream.schedule_in_run_loop(loop)
            stream.open()

        assert run_until(loop, lambda: received == b'ping')
        assert ('server', StreamEvent.OPEN_COMPLETED) in callog
        assert callog.count(('client', StreamEvent.OPEN_COMPLETED)) == 2
        assert len(accepted) == 1
        input_, output = accepted[0]
        assert input_.stream_status == StreamStatus.OPEN
        assert StreamEvent.OPEN_COMPLETED not in echo_events

        client_out.close()
        assert run_until(loop, lambda: client_in.stream_status == StreamStatus.AT_END)
        assert input_.stream_status == StreamStatus.CLOSED
        assert output.stream_status == StreamStatus.CLOSED
    finally:
        client_in.close()
        client_out.close()
        server.close()


def test_connection_refused(callog):
    input_, output = Stream.get_streams_to_host('127.0.0.1', free_port())
    loop = RunLoop()
    with LogCapture():
        for stream in (input_, output):
            stream.delegate = Recorder(callog)
            stream.schedule_in_run_loop(loop)
            stream.open()
        assert run_until(loop, lambda: callog.count(StreamEvent.ERROR_OCCURRED) == 2)
    for stream in (input_, output):
        assert stream.stream_status == StreamStatus.CLOSED
        assert isinstance(stream.stream_error, OSError)


def test_local_streams(callog):
    path = os.path.join(tempfile.mkdtemp(), 'stream.sock')
    server = ServerStream.to_local(path)
    loop = RunLoop()
    server.schedule_in_run_loop(loop)
    server.open()
    assert os.path.exists(path)
    assert server.port_number is None

    client_in, client_out = Stream.get_local_streams_to_path(path)
    client_out.schedule_in_run_loop(loop)
    client_out.open()
    try:
        assert run_until(loop, lambda: client_out.stream_status == StreamStatus.OPEN)
        assert client_out.write(b'local') == 5

        pair = (None, None)
        deadline = date_after(2.0)
        while pair[0] is None and time.time() < deadline:
            loop.accept_input_for_mode(DEFAULT_MODE, date_after(0.05))
            pair = server.accept()
        input_, output = pair
        assert input_ is not None

        delegate = Recorder(callog, read_size=100)
        input_.delegate = delegate
        input_.schedule_in_run_loop(loop)
        assert run_until(loop, lambda: delegate.data == b'local')
        input_.close()
        output.close()
    finally:
        client_in.close()
        client_out.close()
        server.close()
    assert not os.path.exists(path)


if __name__ == '__main__':
    pytest.main([__file__])
