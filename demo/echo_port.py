import sys
import logging
from time import time
from monsoon.core import RunLoop, SocketPort, DEFAULT_MODE, enable_logging
from monsoon.core.abc import PortDelegate
from monsoon.core.utils import logger, date_after


class Echo(PortDelegate):

    def handle_port_message(self, message):
        logger.info("Received %d bytes from %s", len(message.data), message.address)
        message.reply(message.data)


class Printer(PortDelegate):

    def __init__(self):
        self.replies = list()

    def handle_port_message(self, message):
        self.replies.append(message.data)
        logger.info("Reply: %r", message.data)


def echo_server(port):
    server = SocketPort(port, delegate=Echo())
    server.add_to_run_loop(RunLoop.current())
    RunLoop.current().run()


def echo_client(port, lines):
    printer = Printer()
    remote = SocketPort(port, '127.0.0.1', listener=False, delegate=printer)
    loop = RunLoop.current()
    remote.add_to_run_loop(loop)
    for line in lines:
        if not remote.send_before_date(line.encode(), date_after(5.0)):
            logger.error("Cannot send to port %s", port)
            break
        expected = len(printer.replies) + 1
        deadline = date_after(5.0)
        while len(printer.replies) < expected and time() < deadline:
            loop.accept_input_for_mode(DEFAULT_MODE, deadline)
    remote.invalidate()


if __name__ == '__main__':

    enable_logging(logging.INFO)
    port = int(sys.argv[2]) if len(sys.argv) > 2 else 22077
    if len(sys.argv) > 1 and sys.argv[1] == 'client':
        echo_client(port, sys.argv[3:] or ['Hello', 'World'])
    else:
        echo_server(port)
