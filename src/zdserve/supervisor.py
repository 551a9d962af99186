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
"""Supervising a web server that runs in the background.

The server daemonizes (or is detached by spawn()), so it is not our child
and we can't wait() for it.  Everything we know about it comes from its
PID file and from whether it accepts connections.  The supervisor itself
may exit and be run again later to query or stop the same server.

Phases::

    not-started -> starting -> running -> stopping -> stopped
                       |          |
                       +----------+------> crashed

start() is allowed again after stopped or crashed.
"""
import collections
import contextlib
import errno
import logging
import os
import signal
import threading
import time

from zdserve import ping
from zdserve.console import tail_file
from zdserve.process import ProcessHandle, SpawnError, signame, spawn

NOT_STARTED = "not-started"
STARTING = "starting"
RUNNING = "running"
STOPPING = "stopping"
STOPPED = "stopped"
CRASHED = "crashed"

# wait_until_exited() results
EXITED = "exited"
INTERRUPTED = "interrupted"


class SupervisorError(Exception):
    pass


class AlreadyRunningError(SupervisorError):

    def __init__(self, pid):
        SupervisorError.__init__(self, "already running; pid=%d" % pid)
        self.pid = pid


class StartError(SupervisorError):
    pass


class StartTimeoutError(StartError):

    def __init__(self, message, captured_output=""):
        StartError.__init__(self, message)
        self.captured_output = captured_output

    def __str__(self):
        if not self.captured_output:
            return self.args[0]
        return "%s\n%s" % (self.args[0], self.captured_output.rstrip("\n"))


class ConfigMaterializationError(SupervisorError):
    pass


class NotRunningError(SupervisorError):
    pass


class SignalDeliveryError(SupervisorError):

    def __init__(self, pid, reason):
        SupervisorError.__init__(
            self, "can't signal process %d: %s" % (pid, reason))
        self.pid = pid
        self.reason = reason


class StopTimeoutError(SupervisorError):

    def __init__(self, pid):
        SupervisorError.__init__(
            self, "process %d is still running after SIGKILL" % pid)
        self.pid = pid


_fields = ("identifier pid_file log_file start_command ping_target"
           " start_timeout stop_timeout stop_signal reload_signal")


class SupervisorConfig(collections.namedtuple("SupervisorConfig", _fields)):
    """How to run and reach the server; checked once, never changed."""

    __slots__ = ()

    def __new__(cls, identifier, pid_file, log_file, start_command,
                ping_target, start_timeout=25, stop_timeout=30,
                stop_signal=signal.SIGTERM, reload_signal=signal.SIGHUP):
        if not os.path.isabs(pid_file or ""):
            raise ValueError("pid_file must be an absolute path: %r"
                             % pid_file)
        if log_file is not None and not os.path.isabs(log_file):
            raise ValueError("log_file must be an absolute path: %r"
                             % log_file)
        start_command = tuple(start_command)
        if not start_command:
            raise ValueError("start_command is empty")
        if isinstance(ping_target, ping.UnixSocketTarget):
            if not os.path.isabs(ping_target.path):
                raise ValueError("socket path must be absolute: %r"
                                 % ping_target.path)
        elif not isinstance(ping_target, ping.TCPTarget):
            raise ValueError("ping_target must be a TCPTarget or a"
                             " UnixSocketTarget, not %r" % (ping_target,))
        if not start_timeout > 0:
            raise ValueError("start_timeout must be greater than zero")
        if not stop_timeout > 0:
            raise ValueError("stop_timeout must be greater than zero")
        if stop_signal == reload_signal:
            raise ValueError("stop_signal and reload_signal must differ")
        return super().__new__(
            cls, identifier, pid_file, log_file, start_command, ping_target,
            start_timeout, stop_timeout, stop_signal, reload_signal)


class Supervisor:
    """Starts, stops, reloads and watches one server.

    start(), stop() and reload() each hold the same lock while they look
    up the pid, decide what to do and do it, so a reload triggered by the
    directory watcher never races an explicit stop.
    """

    ping_interval = 0.1  # between probes while starting or stopping
    wait_interval = 1.0  # wait_until_exited() notices shutdown this fast
    kill_timeout = 5     # how long SIGKILL may take

    def __init__(self, config, materializer, logger=None):
        self.config = config
        self.materializer = materializer
        self.logger = logger or logging.getLogger("zdserve")
        self.handle = ProcessHandle(config.pid_file, self.logger)
        self.lock = threading.RLock()
        self.apps = []
        self.pid = None
        self.phase = NOT_STARTED
        self.recover()

    def recover(self):
        """Work out the phase of a server some earlier run may have started.
        """
        with self.lock:
            pid = self.handle.read_pid()
            if self.handle.is_alive(pid) and self.ping():
                self.pid = pid
                self.phase = RUNNING

    def ping(self, timeout=1.0):
        return ping.probe(self.config.ping_target, timeout)

    def live_pid(self):
        """Return the pid from the PID file if that process exists."""
        pid = self.handle.read_pid()
        if self.handle.is_alive(pid):
            return pid
        return None

    def is_running(self):
        pid = self.live_pid()
        return pid is not None and self.ping()

    def status(self):
        """Return (phase, pid) after looking at the server again."""
        with self.lock:
            pid = self.live_pid()
            if pid is not None and self.ping():
                self.pid = pid
                if self.phase in (NOT_STARTED, STOPPED, CRASHED):
                    self.phase = RUNNING
            elif self.phase == RUNNING:
                self.phase = CRASHED
            return self.phase, pid

    def start(self, apps=None):
        """Start the server and wait until it accepts connections.

        Return its pid, or None if it didn't write a PID file.
        """
        with self.lock:
            if apps is not None:
                self.apps = list(apps)
            self.materialize()

            pid = self.handle.read_pid()
            if self.handle.is_alive(pid) and self.ping():
                self.pid = pid
                self.phase = RUNNING
                raise AlreadyRunningError(pid)

            self.phase = STARTING
            stale = pid
            deadline = time.time() + self.config.start_timeout
            try:
                spawned = spawn(self.config.start_command,
                                self.config.log_file)
            except SpawnError:
                self.phase = CRASHED
                raise
            self.logger.info("spawned %s; pid=%d"
                             % (self.config.identifier, spawned))

            try:
                while True:
                    remaining = deadline - time.time()
                    if remaining <= 0:
                        break
                    if self.ping(min(1.0, remaining)):
                        self.phase = RUNNING
                        self.pid = self.handle.read_pid()
                        if self.pid is None:
                            self.logger.warning(
                                "%s is up but PID file %s is missing"
                                % (self.config.identifier,
                                   self.config.pid_file))
                        self.logger.info("%s started; listening on %s"
                                         % (self.config.identifier,
                                            self.config.ping_target))
                        return self.pid
                    time.sleep(max(0, min(self.ping_interval,
                                          deadline - time.time())))
            except BaseException:
                # Interrupted while waiting, ^C most likely.
                self.phase = CRASHED
                self.abandon(stale, spawned)
                raise

            self.phase = CRASHED
            self.logger.error("%s didn't start within %s seconds"
                              % (self.config.identifier,
                                 self.config.start_timeout))
            output = ""
            if self.config.log_file:
                output = tail_file(self.config.log_file)
            self.abandon(stale, spawned)
            raise StartTimeoutError(
                "%s didn't accept connections on %s within %s seconds"
                % (self.config.identifier, self.config.ping_target,
                   self.config.start_timeout),
                output)

    def abandon(self, stale, spawned):
        """Stop what a failed start left running.

        That is the spawned process and whatever pid it wrote to the PID
        file, but not the stale pid that was there before.
        """
        pids = [spawned]
        pid = self.handle.read_pid()
        if pid not in (None, stale, spawned):
            pids.append(pid)
        for pid in pids:
            if not self.handle.is_alive(pid):
                continue
            self.logger.warning("stopping what is left of %s; pid=%d"
                                % (self.config.identifier, pid))
            self.handle.kill(pid, self.config.stop_signal)
            if not self.wait_for_exit(pid, self.kill_timeout):
                self.handle.kill(pid, signal.SIGKILL)
                self.wait_for_exit(pid, self.kill_timeout)

    def stop(self, timeout=None):
        """Stop the server, killing it if it takes longer than timeout.

        Return the pid of the stopped process.
        """
        if timeout is None:
            timeout = self.config.stop_timeout
        with self.lock:
            try:
                pid = self.live_pid()
                if pid is None:
                    if self.phase in (STARTING, RUNNING):
                        self.phase = CRASHED
                    raise NotRunningError(
                        "%s is not running according to %s"
                        % (self.config.identifier, self.config.pid_file))

                phase = self.phase
                self.phase = STOPPING
                sig = self.config.stop_signal
                msg = self.handle.kill(pid, sig)
                if msg:
                    if self.handle.is_alive(pid):
                        self.phase = phase
                        raise SignalDeliveryError(pid, msg)
                    # It exited before the signal got there.
                    self.logger.info("can't send %s to %d: %s"
                                     % (signame(sig), pid, msg))
                elif not self.wait_for_exit(pid, timeout):
                    self.logger.warning(
                        "%s didn't stop within %s seconds; sending SIGKILL"
                        % (self.config.identifier, timeout))
                    self.handle.kill(pid, signal.SIGKILL)
                    if not self.wait_for_exit(pid, self.kill_timeout):
                        raise StopTimeoutError(pid)

                self.phase = STOPPED
                self.pid = None
                self.logger.info("%s stopped; pid=%d"
                                 % (self.config.identifier, pid))
                return pid
            finally:
                self.remove_config()

    def wait_for_exit(self, pid, timeout):
        deadline = time.time() + timeout
        while self.handle.is_alive(pid):
            remaining = deadline - time.time()
            if remaining <= 0:
                return False
            time.sleep(min(self.ping_interval, remaining))
        return True

    def reload(self, apps):
        """Rewrite the configuration and tell the server to reread it.

        The signal is all we do: whether the server managed to reload
        isn't checked.  Return the pid that was signalled.
        """
        with self.lock:
            pid = self.live_pid()
            if pid is None:
                if self.phase in (STARTING, RUNNING):
                    self.phase = CRASHED
                raise NotRunningError(
                    "%s is not running according to %s"
                    % (self.config.identifier, self.config.pid_file))
            self.apps = list(apps)
            self.materialize()
            msg = self.handle.kill(pid, self.config.reload_signal)
            if msg:
                self.phase = CRASHED
                raise SignalDeliveryError(pid, msg)
            self.pid = pid
            self.logger.info("sent %s to %s; pid=%d"
                             % (signame(self.config.reload_signal),
                                self.config.identifier, pid))
            return pid

    def wait_until_exited(self, shutdown=None):
        """Block until the server stops accepting connections.

        Return EXITED, or INTERRUPTED when the shutdown event got set
        first.
        """
        if shutdown is None:
            shutdown = threading.Event()
        closed = ping.wait_until_closed(
            self.config.ping_target, shutdown, self.wait_interval)
        if not closed:
            return INTERRUPTED
        with self.lock:
            if self.phase in (STARTING, RUNNING):
                self.phase = CRASHED
                self.logger.error("%s exited unexpectedly"
                                  % self.config.identifier)
        return EXITED

    @contextlib.contextmanager
    def running(self, apps=None):
        """Run the server for the duration of a with block."""
        pid = self.start(apps)
        try:
            yield pid
        finally:
            try:
                self.stop()
            except NotRunningError:
                pass

    def materialize(self):
        try:
            self.materializer.materialize(self.apps)
        except Exception as err:
            raise ConfigMaterializationError(
                "can't write configuration file %s: %s"
                % (self.materializer.path, err)) from err

    def remove_config(self):
        try:
            self.materializer.remove()
        except OSError as err:
            if err.errno != errno.ENOENT:
                self.logger.warning("can't remove configuration file %s: %s"
                                    % (self.materializer.path, err))
