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
"""Option processing for zdserve.

An option may be given on the command line, in the environment or in a
ZConfig configuration file.  The command line wins over the environment,
which wins over the configuration file, which wins over the default.
"""
import getopt
import os
import signal
import sys
from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as distribution_version

import ZConfig

from zdserve.ping import TCPTarget, UnixSocketTarget


class ZDOptions:
    """a zdserve script.

    Usage: zdserve [-C URL] [options] [action [arguments]]

    Options:
    -C/--configure URL -- configuration file or URL
    -X section/key=value -- override a configuration file setting
    -h/--help -- print usage message and exit
    --version -- print zdserve version and exit
    """

    doc = None
    progname = None
    configfile = None
    schemadir = None
    schemafile = "schema.xml"
    schema = None
    configroot = None
    confighandlers = None

    # Dotted path, relative to configroot, of the <eventlog> section used
    # to configure logging; None disables logging configuration.
    logsectionname = None
    config_logger = None

    positional_args_allowed = False

    def __init__(self):
        self.names_list = []
        self.short_options = []
        self.long_options = []
        self.options_map = {}
        self.default_map = {}
        self.required_map = {}
        self.environ_map = {}
        self.zconfig_options = []
        try:
            self.version = distribution_version("zdserve")
        except PackageNotFoundError:
            self.version = "unknown"
        self.add(None, None, "h", "help", self.help)
        self.add(None, None, None, "version", self.print_version)
        self.add("configfile", None, "C:", "configure=")
        self.add(None, None, "X:", handler=self.zconfig_options.append)

    def print_version(self, dummy):
        """Print the zdserve version to stdout and exit(0)."""
        print(self.version)
        sys.exit(0)

    def help(self, dummy):
        """Print self.doc to stdout and exit(0).

        "%s" in the text is replaced by the program name.
        """
        doc = self.doc or "No help available."
        if "%s" in doc:
            doc = doc.replace("%s", self.progname)
        print(doc, end='')
        sys.exit(0)

    def usage(self, msg):
        """Print a one-line error to stderr and exit(2)."""
        sys.stderr.write("Error: %s\n" % msg)
        sys.stderr.write("For help, use %s -h\n" % self.progname)
        sys.exit(2)

    def add(self,
            name=None,          # attribute set on self
            confname=None,      # dotted path below configroot
            short=None,         # "x" or "x:"
            long=None,          # "name" or "name="
            handler=None,       # converts the string value
            default=None,
            required=None,      # message used when no value was found
            flag=None,          # value stored by an argument-less option
            env=None,           # environment variable name
            ):
        """Declare an option.

        The common forms are:

        add(name, confname)
            only read from the configuration file
        add(name, confname, short, long, handler)
            command line option, converted by handler, falling back to
            the configuration file
        add(None, None, short, long, handler)
            command line option that just calls handler
        """
        if flag is not None:
            if handler is not None:
                raise ValueError("use at most one of flag= and handler=")
            if not (short or long):
                raise ValueError("flag= requires a command line flag")
            if (short or "").endswith(":") or (long or "").endswith("="):
                raise ValueError("flag= requires a command line flag")
            handler = lambda arg, flag=flag: flag

        if short and long and short.endswith(":") != long.endswith("="):
            raise ValueError("inconsistent short/long options: %r %r"
                             % (short, long))

        if short:
            self._register("-" + self._check_short(short), name, handler)
            self.short_options.append(short)
        if long:
            self._register("--" + self._check_long(long), name, handler)
            self.long_options.append(long)
        if env:
            self.environ_map[env] = (name, handler)

        if name:
            if not hasattr(self, name):
                setattr(self, name, None)
            self.names_list.append((name, confname))
            if default is not None:
                self.default_map[name] = default
            if required:
                self.required_map[name] = required

    def _check_short(self, short):
        if short.startswith("-"):
            raise ValueError("short option should not start with '-'")
        if len(short) > 2 or short[1:] not in ("", ":"):
            raise ValueError("short option should be 'x' or 'x:'")
        return short[0]

    def _check_long(self, long):
        if long.startswith("-"):
            raise ValueError("long option should not start with '-'")
        return long.rstrip("=")

    def _register(self, key, name, handler):
        if key in self.options_map:
            raise ValueError("duplicate option key '%s'" % key)
        self.options_map[key] = (name, handler)

    def realize(self, args=None, progname=None, doc=None,
                raise_getopt_errs=True):
        """Compute option values.

        args     -- command line arguments without the program name
                    (default sys.argv[1:])
        progname -- program name used in messages (default sys.argv[0])
        doc      -- help text (default the class docstring)
        """
        if args is None:
            args = sys.argv[1:]
        if progname is None:
            progname = sys.argv[0]
        self.progname = progname
        self.doc = doc or self.__doc__

        self._parse_command_line(args, raise_getopt_errs)
        self._apply_environment()
        self._apply_configfile()
        for name, value in self.default_map.items():
            if getattr(self, name) is None:
                setattr(self, name, value)
        for name, message in self.required_map.items():
            if getattr(self, name) is None:
                self.usage(message)
        if self.logsectionname:
            self.load_logconf(self.logsectionname)

    def _parse_command_line(self, args, raise_getopt_errs):
        self.options = []
        self.args = []
        try:
            self.options, self.args = getopt.getopt(
                args, "".join(self.short_options), self.long_options)
        except getopt.error as msg:
            if raise_getopt_errs:
                self.usage(msg)
        if self.args and not self.positional_args_allowed:
            self.usage("positional arguments are not supported")

        for opt, arg in self.options:
            name, handler = self.options_map[opt]
            if handler is not None:
                try:
                    arg = handler(arg)
                except ValueError as msg:
                    self.usage("invalid value for %s %r: %s" % (opt, arg, msg))
            if not name or arg is None:
                continue
            current = getattr(self, name)
            if current is not None and current != arg:
                self.usage("conflicting command line option %r" % opt)
            setattr(self, name, arg)

    def _apply_environment(self):
        for envvar, (name, handler) in self.environ_map.items():
            if envvar not in os.environ:
                continue
            if name and getattr(self, name, None) is not None:
                continue
            value = os.environ[envvar]
            if handler is not None:
                try:
                    value = handler(value)
                except ValueError as msg:
                    self.usage("invalid environment value for %s %r: %s"
                               % (envvar, value, msg))
            if name and value is not None:
                setattr(self, name, value)

    def _apply_configfile(self):
        if self.configfile is None:
            self.configfile = self.default_configfile()
        if self.configfile is None:
            if self.zconfig_options:
                self.usage("configuration overrides (-X) cannot be used"
                           " without a configuration file")
            return
        self.load_schema()
        try:
            self.load_configfile()
        except ZConfig.ConfigurationError as msg:
            self.usage(str(msg))
        for name, confname in self.names_list:
            if confname and getattr(self, name) is None:
                setattr(self, name, self.lookup_config(confname))

    def lookup_config(self, confname):
        """Return the value at dotted path confname below configroot."""
        obj = self.configroot
        for part in confname.split("."):
            if obj is None:
                break
            obj = getattr(obj, part)
        return obj

    def default_configfile(self):
        """Return the name of a configuration file to use without -C."""
        return None

    def load_schema(self):
        if self.schema is None:
            if self.schemadir is None:
                self.schemadir = os.path.dirname(__file__)
            self.schemafile = os.path.join(self.schemadir, self.schemafile)
            self.schema = ZConfig.loadSchema(self.schemafile)

    def load_configfile(self):
        self.configroot, self.confighandlers = ZConfig.loadConfig(
            self.schema, self.configfile, self.zconfig_options)

    def load_logconf(self, sectname="eventlog"):
        self.config_logger = self.lookup_config(sectname)
        if self.config_logger is not None:
            self.config_logger.startup()


class ServeOptions(ZDOptions):
    """Options describing the supervised web server."""

    def __init__(self):
        ZDOptions.__init__(self)
        self.add("identifier", "server.identifier", default="web server")
        self.add("program", "server.program", "n:", "server-bin=",
                 string_list)
        self.add("address", "server.address", "a:", "address=")
        self.add("port", "server.port", "p:", "port=", port_number)
        self.add("sockname", "server.socket_name", "S:", "socket=",
                 existing_parent_dirpath)
        self.add("pidfile", "server.pid_file", "P:", "pid-file=",
                 existing_parent_dirpath)
        self.add("logfile", "server.log_file", "l:", "log-file=",
                 existing_parent_dirpath)
        self.add("serverconfig", "server.server_config", None,
                 "server-config=", existing_parent_dirpath)
        self.add("configoption", "server.config_option", default="-c")
        self.add("template", "server.template", None, "template=")
        self.add("start_timeout", "server.start_timeout",
                 "T:", "start-timeout=", positive_number, default=25)
        self.add("stop_timeout", "server.stop_timeout",
                 None, "stop-timeout=", positive_number, default=30)
        self.add("stop_signal", "server.stop_signal",
                 default=signal.SIGTERM)
        self.add("reload_signal", "server.reload_signal",
                 default=signal.SIGHUP)


# Datatypes, used both as option handlers and as ZConfig datatypes

def string_list(arg):
    return arg.split()


def port_number(arg):
    port = int(arg)
    if not 0 < port < 65536:
        raise ValueError("%s is not a valid port number" % arg)
    return port


def positive_number(arg):
    value = float(arg)
    if value <= 0:
        raise ValueError("must be greater than zero")
    if value == int(value):
        value = int(value)
    return value


def name2signal(string):
    """Converts a signal name to canonical form.

    Case does not matter and the leading 'SIG' is optional:

      >>> name2signal('sighup')
      'SIGHUP'
      >>> name2signal('Term')
      'SIGTERM'

    Numbers are accepted too:

      >>> name2signal(str(signal.SIGHUP))
      'SIGHUP'

    Anything else is an error:

      >>> name2signal('woohoo')
      Traceback (most recent call last):
      ValueError: could not convert 'woohoo' to signal name

      >>> name2signal('SIG_DFL')
      Traceback (most recent call last):
      ValueError: could not convert 'SIG_DFL' to signal name

      >>> name2signal(str(signal.NSIG))  #doctest: +ELLIPSIS
      Traceback (most recent call last):
      ValueError: unsupported signal on this platform: ...
    """
    try:
        number = int(string)
    except ValueError:
        if "_" in string:
            raise ValueError("could not convert %r to signal name" % string)
        name = string.upper()
        if name.startswith("SIGNALS."):
            name = name[len("SIGNALS."):]
        if not name.startswith("SIG"):
            name = "SIG" + name
        if isinstance(getattr(signal, name, None), int):
            return name
        raise ValueError("could not convert %r to signal name" % string)
    if 0 < number < signal.NSIG:
        try:
            return signal.Signals(number).name
        except ValueError:
            pass
    raise ValueError("unsupported signal on this platform: %s" % string)


def signal_number(string):
    """Return the number of the signal called (or numbered) string.

      >>> signal_number('hup') == signal.SIGHUP
      True
    """
    return int(getattr(signal, name2signal(string)))


def existing_parent_dirpath(arg):
    path = os.path.expanduser(arg)
    parent = os.path.dirname(path)
    if not parent or os.path.isdir(parent):
        return path
    raise ValueError('The directory named as part of the path %s '
                     'does not exist.' % arg)


def ping_target_for(sockname=None, address=None, port=None):
    """Return where a server listening as described can be reached.

      >>> ping_target_for(sockname='/tmp/web.sock')
      UnixSocketTarget(path='/tmp/web.sock')
      >>> ping_target_for(address='0.0.0.0', port=3000)
      TCPTarget(host='127.0.0.1', port=3000)
      >>> ping_target_for(address='example.com', port=80)
      TCPTarget(host='example.com', port=80)
    """
    if sockname:
        return UnixSocketTarget(os.path.abspath(sockname))
    if address in (None, "", "0.0.0.0"):
        address = "127.0.0.1"
    elif address == "::":
        address = "::1"
    return TCPTarget(address, port)
