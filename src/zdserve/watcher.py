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
"""Redeploying when applications are added to or removed from a directory.
"""
import logging
import os
import threading
import time

import ZConfig

from zdserve.supervisor import (
    ConfigMaterializationError, NotRunningError, SignalDeliveryError)


def app_table(apps):
    lines = [" Host name                     Directory",
             "-" * 60]
    for app in apps:
        lines.append(" %-26s    %s" % (app.server_names[0], app.root))
    return lines


class DirectoryWatcher(threading.Thread):
    """Reloads the server when a watched directory changes.

    Every interval seconds the modification times of the directories are
    compared with the previous ones; any difference triggers exactly one
    redeploy.  The thread ends when the shutdown event is set or when the
    server turns out to be gone.
    """

    # How long to give the main thread to notice that the server died
    # before complaining ourselves.
    grace_period = 6
    watching = True

    def __init__(self, supervisor, directories, find_apps, shutdown, console,
                 interval=3.0, logger=None):
        threading.Thread.__init__(self, name="directory watcher")
        self.daemon = True
        self.supervisor = supervisor
        self.directories = list(directories)
        self.find_apps = find_apps
        self.shutdown = shutdown
        self.console = console
        self.interval = interval
        self.logger = logger or logging.getLogger("zdserve")
        self.mtimes = self.snapshot()

    def snapshot(self):
        mtimes = []
        for directory in self.directories:
            try:
                mtimes.append(os.stat(directory).st_mtime)
            except OSError:
                mtimes.append(None)
        return mtimes

    def run(self):
        while not self.shutdown.wait(self.interval):
            if self.check() and not self.watching:
                break

    def check(self):
        """Compare the directories with the last snapshot.

        Return True if they changed (and a redeploy was attempted).
        """
        mtimes = self.snapshot()
        if mtimes == self.mtimes:
            return False
        self.mtimes = mtimes
        self.redeploy()
        return True

    def redeploy(self):
        self.console.write("*** %s: redeploying applications ***\n"
                           % time.ctime())
        try:
            apps = self.find_apps()
        except ZConfig.ConfigurationError as err:
            self.logger.error("not redeploying: %s" % err)
            return
        try:
            self.supervisor.reload(apps)
        except NotRunningError as err:
            # Most likely the server is gone and the main thread is about
            # to find out; only complain if it doesn't.
            if not self.shutdown.wait(self.grace_period):
                self.console.write(
                    "*** Error: unable to retrieve the web server's PID"
                    " (%s).\n" % err)
            self.watching = False
            return
        except SignalDeliveryError as err:
            self.logger.error(str(err))
            self.watching = False
            return
        except ConfigMaterializationError as err:
            self.logger.error(str(err))
            return
        self.console.print_lines(
            ["Now serving these applications:"] + app_table(apps)
            + ["-" * 60])
