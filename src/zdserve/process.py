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
"""Launching the web server and talking to it through its pid.

The server is never our child: spawn() forks twice so that it ends up in
a session of its own and is reparented to init.  From then on the PID
file it writes is the only handle we have on it.
"""
import errno
import logging
import os
import signal
from stat import ST_MODE

import psutil


class SpawnError(Exception):
    """The operating system could not start the program."""

    def __init__(self, program, reason):
        Exception.__init__(self, "can't start %r: %s" % (program, reason))
        self.program = program
        self.reason = reason


try:
    MAXFD = os.sysconf("SC_OPEN_MAX")
except (AttributeError, ValueError):  # pragma: nocover
    MAXFD = 256


def get_path():
    """Return a list corresponding to $PATH, or a default."""
    path = ["/bin", "/usr/bin", "/usr/local/bin"]
    if os.environ.get("PATH"):
        path = os.environ["PATH"].split(os.pathsep)
    return path


def find_program(program):
    """Turn a program name into an executable file name, using $PATH."""
    if "/" in program:
        filename = program
        if not os.path.exists(filename):
            raise SpawnError(program, "no such file")
    else:
        for dir in get_path():
            filename = os.path.join(dir, program)
            try:
                st = os.stat(filename)
            except OSError:
                continue
            if st[ST_MODE] & 0o111:
                break
        else:
            raise SpawnError(program, "not found on PATH %s" % get_path())
    if not os.access(filename, os.X_OK):
        raise SpawnError(program, "permission denied")
    return filename


def spawn(args, log_file=None):
    """Start args[0] with arguments args, detached from us.

    stdin is /dev/null; stdout and stderr are appended to log_file, or
    discarded when it is None.  Return the pid of the started process.
    Raise SpawnError if it could not be started at all.
    """
    filename = find_program(args[0])
    report_r, report_w = os.pipe()
    try:
        pid = os.fork()
    except OSError as err:
        os.close(report_r)
        os.close(report_w)
        raise SpawnError(args[0], str(err))

    if pid == 0:  # pragma: nocover
        # Intermediate child: start a session so that signals sent to our
        # parent's process group don't reach the server, then fork again
        # so the server isn't a session leader and gets reparented.
        status = 127
        try:
            os.close(report_r)
            os.setsid()
            grandchild = os.fork()
            if grandchild == 0:
                _exec(filename, args, log_file, report_w)
            os.write(report_w, ("pid %d\n" % grandchild).encode())
            status = 0
        finally:
            os._exit(status)

    os.close(report_w)
    try:
        os.waitpid(pid, 0)
        report = b""
        while True:
            data = os.read(report_r, 1024)
            if not data:
                break
            report += data
    finally:
        os.close(report_r)

    # The report pipe is close-on-exec; a successful exec just closes it.
    spawned = None
    for line in report.decode("utf-8", "replace").splitlines():
        kind, _, value = line.partition(" ")
        if kind == "error":
            raise SpawnError(args[0], value)
        if kind == "pid":
            spawned = int(value)
    if spawned is None:
        raise SpawnError(args[0], "fork failed")
    return spawned


def _exec(filename, args, log_file, report_w):  # pragma: nocover
    try:
        null = os.open(os.devnull, os.O_RDONLY)
        os.dup2(null, 0)
        if log_file:
            out = os.open(log_file, os.O_WRONLY | os.O_APPEND | os.O_CREAT,
                          0o644)
        else:
            out = os.open(os.devnull, os.O_WRONLY)
        os.dup2(out, 1)
        os.dup2(out, 2)
        os.closerange(3, report_w)
        os.closerange(report_w + 1, MAXFD)
        os.execv(filename, args)
    except OSError as err:
        os.write(report_w, ("error %s\n" % err).encode())
    finally:
        os._exit(127)


class ProcessHandle:
    """What we know about the server through its PID file."""

    def __init__(self, pid_file, logger=None):
        self.pid_file = pid_file
        self.logger = logger or logging.getLogger("zdserve")

    def read_pid(self):
        """Return the pid in the PID file, or None.

        A missing, empty or garbled file all mean there's no pid.
        """
        try:
            with open(self.pid_file) as f:
                data = f.read().strip()
        except OSError as err:
            if err.errno != errno.ENOENT:
                self.logger.warning("can't read PID file %s: %s"
                                    % (self.pid_file, err))
            return None
        try:
            pid = int(data)
        except ValueError:
            if data:
                self.logger.warning("PID file %s holds %r, not a pid"
                                    % (self.pid_file, data[:40]))
            return None
        return pid if pid > 0 else None

    def is_alive(self, pid):
        """Return whether a process with this pid exists.

        Zombies don't count: they are gone, just not reaped yet.
        """
        if not pid:
            return False
        try:
            return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            return True

    def kill(self, pid, sig):
        """Send a signal to pid.

        Return None if the signal was sent, or an error message string
        if it could not be delivered.
        """
        if not pid:
            return "no process running"
        try:
            os.kill(pid, sig)
        except OSError as msg:
            return str(msg)
        return None


def signame(sig):
    """Return a symbolic name for a signal.

    Return "signal NNN" if there is no corresponding SIG name in the
    signal module.
    """
    try:
        return signal.Signals(sig).name
    except ValueError:
        return "signal %d" % sig
