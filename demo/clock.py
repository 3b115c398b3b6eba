import sys
import logging
from datetime import datetime
from monsoon.core import RunLoop, Timer, Stream, StreamEvent, enable_logging
from monsoon.core.abc import StreamDelegate
from monsoon.core.utils import logger, date_after


class Display(StreamDelegate):

    def handle_event(self, stream, event):
        if event == StreamEvent.HAS_BYTES_AVAILABLE:
            for line in stream.read().decode().splitlines():
                logger.info(line)
        elif event == StreamEvent.END_ENCOUNTERED:
            logger.info("Clock has stopped")
            stream.close()


def clock(seconds):
    loop = RunLoop.current()
    input_, output = Stream.pipe()
    input_.delegate = Display()
    input_.schedule_in_run_loop(loop)

    def tick(timer):
        output.write("Tick {:%H:%M:%S}\n".format(datetime.now()).encode())

    def stop(timer):
        ticker.invalidate()
        output.close()

    ticker = Timer.scheduled(1.0, tick, repeats=True)
    Timer.scheduled(seconds + 0.5, stop)
    loop.run_until_date(date_after(seconds + 5))


if __name__ == '__main__':

    enable_logging(logging.INFO)
    clock(int(sys.argv[1]) if len(sys.argv) > 1 else 5)
