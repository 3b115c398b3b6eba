"""
`monsoon.core` contains the run loop which multiplexes timers,
descriptors and ports of a thread, and the ports and streams
which are scheduled in it.
"""
from monsoon.core.runloop import RunLoop, EventType, DEFAULT_MODE, COMMON_MODES  # noqa
from monsoon.core.timer import Timer  # noqa
from monsoon.core.notifications import NotificationCenter, Notification  # noqa
from monsoon.core.port import Port, PortMessage, PORT_DID_BECOME_INVALID  # noqa
from monsoon.core.socketport import SocketPort, FramingError  # noqa
from monsoon.core.messageport import MessagePort  # noqa
from monsoon.core.iostream import Stream, InputStream, OutputStream, ServerStream  # noqa
from monsoon.core.iostream import StreamStatus, StreamEvent  # noqa
from monsoon.core.utils import DISTANT_PAST, DISTANT_FUTURE, enable_logging
