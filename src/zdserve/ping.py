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
"""Find out whether the web server accepts connections.

Being able to open a connection is the only liveness signal; nothing is
ever sent over it.
"""
import collections
import socket


class TCPTarget(collections.namedtuple("TCPTarget", "host port")):

    __slots__ = ()
    kind = "tcp"

    def connect(self, timeout):
        return socket.create_connection((self.host, self.port), timeout)

    def __str__(self):
        return "%s:%d" % (self.host, self.port)


class UnixSocketTarget(collections.namedtuple("UnixSocketTarget", "path")):

    __slots__ = ()
    kind = "unix"

    def connect(self, timeout):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(timeout)
            sock.connect(self.path)
        except OSError:
            sock.close()
            raise
        return sock

    def __str__(self):
        return "unix:%s" % self.path


def probe(target, timeout=1.0):
    """Return True if a connection to target could be opened.

    Refused connections, missing socket files, timeouts and name
    resolution failures all just mean "not reachable".
    """
    try:
        sock = target.connect(timeout)
    except OSError:
        return False
    sock.close()
    return True


def wait_until_closed(target, interrupted, interval=1.0):
    """Block until target stops accepting connections.

    We connect and read until the server drops the idle connection, then
    connect again.  A refused connection means the listener is gone.

    Return True when that happened, or False as soon as the interrupted
    event is set; it is checked every interval seconds.
    """
    while not interrupted.is_set():
        try:
            sock = target.connect(interval)
        except socket.timeout:
            continue
        except OSError:
            return True
        try:
            sock.settimeout(interval)
            while not interrupted.is_set():
                try:
                    data = sock.recv(1024)
                except socket.timeout:
                    continue
                except OSError:
                    # Reset; reconnecting tells us whether it's gone.
                    break
                if not data:
                    break
        finally:
            sock.close()
    return False
