""" Core utils
"""
import os
import errno
import socket
import logging
from time import time

import tornado.log
from tornado.netutil import bind_sockets, bind_unix_socket
from tornado.util import errno_from_exception

logger = logging.getLogger('monsoon')

DISTANT_PAST = 0.0
DISTANT_FUTURE = float('inf')

# Truncated by the system to its own maximum
BACKLOG = 10000
BLOCK_SIZE = 8192

_WOULD_BLOCK = (errno.EWOULDBLOCK, errno.EAGAIN, errno.EINPROGRESS)


def enable_logging(level=logging.INFO):
    """ Turns on the tornado pretty log formatter for the package logger.
    """
    tornado.log.enable_pretty_logging(logger=logger)
    logger.setLevel(level)
    return logger


def date_after(seconds):
    """ Returns the date which is `seconds` after now.
    """
    return time() + seconds


def seconds_until(date):
    """ Returns number of seconds remaining until a given `date`,
    zero if it is already passed or `None` for the distant future.
    """
    if date == DISTANT_FUTURE:
        return None
    remaining = date - time()
    return remaining if remaining > 0 else 0


def would_block(exc):
    """ Returns `True` if the OS error `exc` means "try again later".
    """
    return errno_from_exception(exc) in _WOULD_BLOCK


class Addr(tuple):

    def __str__(self):
        """ Returns a pretty string representation of a given IP address.
        """
        if len(self) == 0:
            return "<unnamed>"
        if len(self) == 1:
            return str(self[0])
        if len(self) > 2:
            return "[{}]:{}".format(*self[:2])
        else:
            return "{}:{}".format(*self)


def make_addr(address):
    """ Wraps result of `socket.getpeername` and the like.
    """
    if isinstance(address, (tuple, list)):
        return Addr(address)
    return Addr((address,) if address else ())


def listen_sockets(port, address=None, *, family=socket.AF_INET, backlog=BACKLOG):
    """ Creates non-blocking listening sockets for a given `port`
    on a given `address`.
    """
    sockets = bind_sockets(port, address, family=family, backlog=backlog)
    if len(sockets) == 0:
        raise IOError("Cannot bind any sockets for {}".format(Addr((address, port))))
    for socket_ in sockets:
        logger.debug("Listening on %s", make_addr(socket_.getsockname()))
    return sockets


def listen_unix_socket(path, *, backlog=BACKLOG):
    """ Creates non-blocking listening unix domain socket on a given `path`.
    """
    socket_ = bind_unix_socket(path, backlog=backlog)
    logger.debug("Listening on %s", path)
    return socket_


def connect_socket(target, family=None):
    """ Starts non-blocking connect to a given `target`, returns
    socket and `True` if connection has already established.
    """
    if family is None:
        family = socket.AF_UNIX if isinstance(target, str) else socket.AF_INET
    socket_ = socket.socket(family, socket.SOCK_STREAM)
    socket_.setblocking(False)
    try:
        socket_.connect(target)
        return socket_, True
    except OSError as exc:
        if would_block(exc):
            return socket_, False
        socket_.close()
        raise


def close_socket(socket_):
    """ Shutdowns and closes socket.
    """
    try:
        socket_.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass
    finally:
        socket_.close()


def unlink_quietly(path):
    try:
        os.unlink(path)
    except OSError:
        pass
