##############################################################################
#
# Copyright (c) 2010 Zope Foundation and Contributors.
# All Rights Reserved.
#
# This software is subject to the provisions of the Zope Public License,
# Version 2.1 (ZPL).  A copy of the ZPL should accompany this distribution.
# THIS SOFTWARE IS PROVIDED "AS IS" AND ANY AND ALL EXPRESS OR IMPLIED
# WARRANTIES ARE DISCLAIMED, INCLUDING, BUT NOT LIMITED TO, THE IMPLIED
# WARRANTIES OF TITLE, MERCHANTABILITY, AGAINST INFRINGEMENT, AND FITNESS
# FOR A PARTICULAR PURPOSE.
#
##############################################################################
"""Console output shared by the threads of a running zdserve."""
import os
import sys
import threading


class Console:
    """Serializes writes from concurrent threads.

    Every write holds the lock until it is flushed, so lines written by
    different threads never get spliced together.
    """

    def __init__(self, stream=None):
        self._stream = stream
        self.lock = threading.Lock()

    @property
    def stream(self):
        return self._stream if self._stream is not None else sys.stdout

    def write(self, text):
        with self.lock:
            self.stream.write(text)
            self.stream.flush()

    def print_lines(self, lines):
        with self.lock:
            for line in lines:
                self.stream.write(line + "\n")
            self.stream.flush()


def tail(f, max_lines=10, max_bytes=8192):
    """Return (size, lines): the file size and its last lines.

    f is a file opened in binary mode.  At most max_bytes are examined,
    so very long lines get cut.
    """
    f.seek(0, 2)
    size = f.tell()
    start = max(0, size - max_bytes)
    f.seek(start)
    data = f.read(size - start)
    lines = data.decode("utf-8", "replace").splitlines(True)
    if start and lines:
        # First line is probably partial.
        del lines[0]
    if not max_lines:
        return size, []
    return size, lines[-max_lines:]


def tail_file(filename, max_lines=10):
    """Return the last lines of filename as one string; "" if unreadable."""
    try:
        with open(filename, "rb") as f:
            return "".join(tail(f, max_lines)[1])
    except OSError:
        return ""


class LogTailer(threading.Thread):
    """Copies lines appended to a log file to the console."""

    def __init__(self, filename, console, shutdown, interval=1.0):
        threading.Thread.__init__(self, name="tail %s" % filename)
        self.daemon = True
        self.filename = filename
        self.console = console
        self.shutdown = shutdown
        self.interval = interval
        # A log that appears later is shown from its start.
        self.backlog = 0 if os.path.exists(filename) else 10

    def run(self):
        if self.backlog:
            while not os.path.exists(self.filename):
                if self.shutdown.wait(self.interval):
                    return
        with open(self.filename, "rb") as f:
            self.tailf(f, self.backlog)

    def tailf(self, f, backlog):
        size, lines = tail(f, backlog)
        if backlog and lines:
            self.console.write("".join(lines))
        while not self.shutdown.wait(self.interval):
            newsize = os.fstat(f.fileno()).st_size
            if newsize < size:
                self.console.write("==> File truncated <==\n")
                size = 0
            if newsize > size:
                f.seek(size)
                data = f.read(newsize - size)
                self.console.write(data.decode("utf-8", "replace"))
                size = newsize
