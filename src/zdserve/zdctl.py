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
"""zdserve -- serve web applications through a supervised web server.

Usage: zdserve [-C URL] [options] action [arguments]

Options:
-a/--address HOST -- listen on HOST (default 0.0.0.0)
-C/--configure URL -- configuration file or URL
-d/--daemonize -- move to the background once the server is up
-e/--environment ENV -- framework environment (default development)
-h/--help -- print this usage message and exit
-l/--log-file FILE -- file receiving the server's output
-n/--server-bin PROGRAM -- the web server program to run
-P/--pid-file FILE -- PID file written by the server
-p/--port NUMBER -- listen on port NUMBER (default 3000)
-S/--socket FILE -- listen on a Unix domain socket instead of TCP
-T/--start-timeout SECONDS -- how long the server may take to start
-X section/key=value -- override a configuration file setting
--max-pool-size NUMBER -- maximum number of application processes
--min-instances NUMBER -- minimum number of processes per application
--server-config FILE -- where to write the server configuration file
--stop-timeout SECONDS -- how long the server may take to stop
--template FILE -- template for the server configuration file
--version -- print zdserve version and exit
action [arguments] -- see below

Actions are commands like "start", "stop" and "status".  Most take the
application directories as arguments.  Use the action "help" to find
out about available actions.
"""
import cmd
import hashlib
import logging
import os
import signal
import socket
import sys
import tempfile
import threading

import ZConfig

from zdserve import apps as applications
from zdserve.console import Console, LogTailer
from zdserve.materializer import TemplateMaterializer
from zdserve.process import SpawnError, signame
from zdserve.supervisor import (
    EXITED, INTERRUPTED, RUNNING, AlreadyRunningError,
    ConfigMaterializationError, NotRunningError, SignalDeliveryError,
    StartError, StopTimeoutError, Supervisor, SupervisorConfig)
from zdserve.watcher import DirectoryWatcher, app_table
from zdserve.zdoptions import ServeOptions, ping_target_for, positive_number


class ZDServeOptions(ServeOptions):

    __doc__ = __doc__

    positional_args_allowed = True
    logsectionname = "server.eventlog"

    def __init__(self):
        ServeOptions.__init__(self)
        self.required_map["program"] = (
            "no server program specified; use -n or -C")
        self.add("environment", "server.environment", "e:", "environment=",
                 default="development", env="RACK_ENV")
        self.add("max_pool_size", "server.max_pool_size",
                 None, "max-pool-size=", int, default=6)
        self.add("min_instances", "server.min_instances",
                 None, "min-instances=", int, default=1)
        self.add("daemon", "server.daemon", "d", "daemonize",
                 flag=1, default=0)
        self.add("watch_interval", "server.watch_interval",
                 handler=positive_number, default=3)
        self.add("app_markers", "server.app_markers",
                 default=list(applications.DEFAULT_MARKERS))

    def realize(self, *args, **kwds):
        ServeOptions.realize(self, *args, **kwds)
        if not self.args:
            self.usage("an action argument is required")
        if self.sockname and (self.address or self.port):
            self.usage("you cannot specify both an address/port and a"
                       " socket; please choose either one")
        if not self.sockname:
            if not self.address:
                self.address = "0.0.0.0"
            if not self.port:
                self.port = 3000
        if self.config_logger is None:
            # Without an eventlog section, messages go nowhere.
            self.logger = logging.getLogger("zdserve")
            if not self.logger.handlers:
                self.logger.addHandler(logging.NullHandler())
        else:
            self.logger = self.config_logger()

    def load_logconf(self, sectname):
        """Use the top-level eventlog if <server> has none."""
        ServeOptions.load_logconf(self, sectname)
        if self.config_logger is None and sectname != "eventlog":
            ServeOptions.load_logconf(self, "eventlog")

    def locate(self, directories, create=False):
        """Fill in PID, log and server configuration file locations.

        They depend on the directories being served.  With create, missing
        directories for the default locations are created.
        """
        if self.sockname:
            base = "zdserve"
        else:
            base = "zdserve.%d" % self.port
        pidfile = base + ".pid"
        logfile = base + ".log"
        if directories:
            pidfile = os.path.join(directories[0], pidfile)
            logfile = os.path.join(directories[0], logfile)
        elif applications.looks_like_app_directory(".", self.app_markers):
            pidfile = os.path.join("tmp", "pids", pidfile)
            logfile = os.path.join("log", logfile)
            if create:
                for default, given in ((pidfile, self.pidfile),
                                       (logfile, self.logfile)):
                    if not given:
                        os.makedirs(os.path.dirname(default), exist_ok=True)
        self.pidfile = os.path.abspath(self.pidfile or pidfile)
        self.logfile = os.path.abspath(self.logfile or logfile)
        if self.serverconfig:
            self.serverconfig = os.path.abspath(self.serverconfig)
        else:
            digest = hashlib.sha1(self.pidfile.encode()).hexdigest()[:12]
            self.serverconfig = os.path.join(
                tempfile.gettempdir(), "zdserve.%s.conf" % digest)

    def listen_address(self):
        if self.sockname:
            return "unix:" + os.path.abspath(self.sockname)
        return "%s:%d" % (self.address, self.port)

    def listen_url(self):
        if self.sockname:
            return os.path.abspath(self.sockname)
        if self.port == 80:
            return "http://%s/" % self.address
        return "http://%s:%d/" % (self.address, self.port)

    def supervisor_config(self):
        try:
            return SupervisorConfig(
                self.identifier,
                self.pidfile,
                self.logfile,
                self.program + [self.configoption, self.serverconfig],
                ping_target_for(self.sockname, self.address, self.port),
                self.start_timeout,
                self.stop_timeout,
                self.stop_signal,
                self.reload_signal)
        except ValueError as msg:
            self.usage(msg)

    def materializer(self):
        settings = dict(
            pid_file=self.pidfile,
            log_file=self.logfile,
            listen=self.listen_address(),
            environment=self.environment,
            max_pool_size=self.max_pool_size,
            min_instances=self.min_instances,
        )
        if self.template:
            return TemplateMaterializer.from_file(
                self.serverconfig, settings, self.template)
        return TemplateMaterializer(self.serverconfig, settings)


class ZDServeCmd(cmd.Cmd):

    def __init__(self, options):
        self.options = options
        cmd.Cmd.__init__(self)
        self.console = Console()
        self.exitcode = 0

    def error(self, msg, exitcode=1):
        sys.stdout.flush()
        sys.stderr.write("*** ERROR: %s\n" % msg)
        sys.stderr.flush()
        self.exitcode = exitcode

    def find_apps(self, directories):
        return applications.find_apps(directories, self.options.app_markers)

    def make_supervisor(self, directories, create=False):
        self.options.locate(directories, create)
        return Supervisor(self.options.supervisor_config(),
                          self.options.materializer(),
                          self.options.logger)

    def help_help(self):
        print("help          -- Print a list of available actions.")
        print("help <action> -- Print help for <action>.")

    def do_start(self, arg):
        directories = arg.split()
        try:
            apps = self.find_apps(directories)
        except ZConfig.ConfigurationError as err:
            self.error("invalid application configuration: %s" % err)
            return
        if not apps:
            self.error("no web applications found in %s"
                       % (", ".join(directories) or "the current directory"))
            return
        if not self.check_port():
            return
        supervisor = self.make_supervisor(directories, create=True)

        # From here on ^C and SIGTERM only ask us to shut down; whatever
        # we got to start is stopped on the way out.
        shutdown = threading.Event()

        def request_shutdown(sig, frame):
            shutdown.set()

        previous = {}
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, request_shutdown)
        try:
            self.serve(supervisor, directories, apps, shutdown)
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def serve(self, supervisor, directories, apps, shutdown):
        identifier = self.options.identifier
        try:
            supervisor.start(apps)
        except AlreadyRunningError as err:
            self.error("%s is already running on PID %d."
                       % (identifier, err.pid))
            return
        except StartError as err:
            self.error("could not start %s:\n%s" % (identifier, err))
            return
        except (SpawnError, ConfigMaterializationError) as err:
            self.error("could not start %s: %s" % (identifier, err))
            return

        result = None
        try:
            # A log created after the banner is shown from its start.
            tailers = []
            if not self.options.daemon:
                for app in apps:
                    environment = app.environment or self.options.environment
                    tailers.append(LogTailer(
                        os.path.join(app.root, "log", environment + ".log"),
                        self.console, shutdown))
            self.print_banner(apps)
            if self.options.daemon:
                self.daemonize()
            result = self.supervise(
                supervisor, directories, apps, shutdown, tailers)
        finally:
            if result != EXITED:
                self.stop_server(supervisor)

    def help_start(self):
        print("start [directory ...] -- Start the web server and serve the")
        print("                         applications in the directories.")
        print("                         Stays in the foreground unless -d")
        print("                         is given.")

    def check_port(self):
        """Tell non-root users to use sudo for a privileged port.

        Return False if the port can't be used.
        """
        port = self.options.port
        if self.options.sockname or port >= 1024 or os.geteuid() == 0:
            return True
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.bind(("127.0.0.1", port))
        except PermissionError:
            self.error("only root can listen on port %d.  Please re-run"
                       " zdserve with root privileges and a --user"
                       " option in the server configuration." % port)
            return False
        except OSError:
            # In use, probably by the server itself; start() will tell.
            pass
        finally:
            sock.close()
        return True

    def print_banner(self, apps):
        options = self.options
        title = "=============== zdserve: %s started ===============" % (
            options.identifier)
        lines = [title,
                 "PID file: %s" % options.pidfile,
                 "Log file: %s" % options.logfile,
                 "Environment: %s" % options.environment]
        if len(apps) > 1:
            lines.append("")
            if options.sockname:
                lines.append("Serving these applications:")
            else:
                lines.append("Serving these applications on %s port %d:"
                             % (options.address, options.port))
            lines.extend(app_table(apps))
        else:
            lines.append("Accessible via: %s" % options.listen_url())
        lines.append("")
        if options.daemon:
            lines.append("Serving in the background as a daemon.")
        else:
            lines.append("You can stop zdserve by pressing Ctrl-C.")
        lines.append("=" * len(title))
        self.console.print_lines(lines)

    def daemonize(self):
        # Become the leader of a new session so that signals sent to the
        # terminal's process group (like ^C in the shell we were started
        # from) no longer reach us.  setsid() fails for a group leader,
        # hence the fork.  Our output goes to the server's log file.
        sys.stdout.flush()
        sys.stderr.flush()
        pid = os.fork()
        if pid != 0:  # pragma: nocover
            os._exit(0)
        os.setsid()
        signal.signal(signal.SIGHUP, signal.SIG_IGN)
        null = os.open(os.devnull, os.O_RDONLY)
        os.dup2(null, 0)
        os.close(null)
        out = os.open(self.options.logfile,
                      os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o644)
        os.dup2(out, 1)
        os.dup2(out, 2)
        os.close(out)
        self.options.logger.info("zdserve moved to the background; pid=%d"
                                 % os.getpid())

    def supervise(self, supervisor, directories, apps, shutdown, tailers=()):
        """Wait for the server to exit or for shutdown to be requested.

        The helper threads are joined before we return; stopping the
        server is left to the caller.  Return the result of
        wait_until_exited().
        """
        threads = list(tailers)
        if len(apps) > 1:
            threads.append(DirectoryWatcher(
                supervisor,
                applications.directories_to_watch(directories),
                lambda: self.find_apps(directories),
                shutdown, self.console, self.options.watch_interval,
                self.options.logger))

        result = None
        try:
            for thread in threads:
                thread.start()
            result = supervisor.wait_until_exited(shutdown)
        finally:
            shutdown.set()
            for thread in threads:
                if thread.is_alive():
                    thread.join()

        if result == INTERRUPTED:
            self.exitcode = 2
        else:
            self.console.write("%s exited\n" % self.options.identifier)
        return result

    def stop_server(self, supervisor):
        with self.console.lock:
            out = self.console.stream
            out.write("Stopping %s..." % self.options.identifier)
            out.flush()
            try:
                supervisor.stop()
            except NotRunningError:
                pass
            except (SignalDeliveryError, StopTimeoutError) as err:
                out.write(" failed: %s\n" % err)
                out.flush()
                self.exitcode = 1
                return
            out.write(" done\n")
            out.flush()

    def do_stop(self, arg):
        supervisor = self.make_supervisor(arg.split())
        if supervisor.live_pid() is None:
            self.not_running()
            return
        self.stop_server(supervisor)

    def not_running(self):
        self.error("According to the PID file '%s', %s doesn't seem to be"
                   " running.  If you know that it is running, you've"
                   " probably specified the wrong PID file; please give"
                   " the right one with --pid-file."
                   % (self.options.pidfile, self.options.identifier))

    def help_stop(self):
        print("stop [directory] -- Stop the web server.")
        print("                    Fails if it is not running.")

    def do_status(self, arg):
        supervisor = self.make_supervisor(arg.split())
        phase, pid = supervisor.status()
        if phase == RUNNING:
            print("program running; pid=%d" % pid)
        elif pid:
            print("process %d exists but doesn't accept connections on %s"
                  % (pid, supervisor.config.ping_target))
            self.exitcode = 1
        else:
            print("program not running")
            self.exitcode = 3

    def help_status(self):
        print("status [directory] -- Print status for the web server.")

    def do_reload(self, arg):
        directories = arg.split()
        try:
            apps = self.find_apps(directories)
        except ZConfig.ConfigurationError as err:
            self.error("invalid application configuration: %s" % err)
            return
        supervisor = self.make_supervisor(directories)
        try:
            pid = supervisor.reload(apps)
        except NotRunningError:
            self.not_running()
        except (SignalDeliveryError, ConfigMaterializationError) as err:
            self.error(str(err))
        else:
            print("signal %s sent to process %d"
                  % (signame(self.options.reload_signal), pid))

    def help_reload(self):
        print("reload [directory ...] -- Rewrite the server configuration")
        print("                          and tell the server to reread it.")

    def do_wait(self, arg):
        supervisor = self.make_supervisor(arg.split())
        try:
            supervisor.wait_until_exited()
        except KeyboardInterrupt:
            print("^C")
            self.exitcode = 2
        else:
            print("program exited")

    def help_wait(self):
        print("wait [directory] -- Wait for the web server to exit.")

    def do_logtail(self, arg):
        if not arg:
            self.options.locate([])
            arg = self.options.logfile
        tailer = LogTailer(arg, self.console, threading.Event())
        try:
            with open(arg, "rb") as f:
                tailer.tailf(f, 10)
        except KeyboardInterrupt:
            print()
        except OSError as msg:
            print(msg)

    def help_logtail(self):
        print("logtail [logfile] -- Run tail -f on the given logfile.")
        print("                     The server's log file is the default.")
        print("                     Hit ^C to exit this mode.")

    def do_show(self, arg):
        self.options.locate(arg.split())
        options = self.options
        print("zdserve options:")
        for label, value in (
                ("configfile", options.configfile),
                ("program", options.program),
                ("address", options.address),
                ("port", options.port),
                ("socket", options.sockname),
                ("pidfile", options.pidfile),
                ("logfile", options.logfile),
                ("serverconfig", options.serverconfig),
                ("template", options.template),
                ("environment", options.environment),
                ("start_timeout", options.start_timeout),
                ("stop_timeout", options.stop_timeout),
                ("stop_signal", signame(options.stop_signal)),
                ("reload_signal", signame(options.reload_signal)),
                ("daemon", options.daemon),
                ("app_markers", options.app_markers),
                ):
            print("%-14s %r" % (label + ":", value))

    def help_show(self):
        print("show [directory] -- Show zdserve options.")


def main(args=None, options=None, cmdclass=ZDServeCmd):
    if args is None:
        args = sys.argv[1:]
    if options is None:
        options = ZDServeOptions()
    options.realize(args)
    c = cmdclass(options)
    c.onecmd(" ".join(options.args))
    if c.exitcode:
        sys.exit(c.exitcode)


if __name__ == "__main__":
    main()
