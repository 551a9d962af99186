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
"""Test suite for watcher.py."""
import io
import os
import shutil
import tempfile
import threading
import time
import unittest

import mock
import ZConfig

from zdserve.apps import AppTarget
from zdserve.console import Console
from zdserve.supervisor import (
    ConfigMaterializationError, NotRunningError, SignalDeliveryError)
from zdserve.watcher import DirectoryWatcher, app_table

blog = AppTarget(("blog", "www.blog"), "/srv/blog")
shop = AppTarget(("shop", "www.shop"), "/srv/shop")


class WatcherTests(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.other = tempfile.mkdtemp()
        self.supervisor = mock.Mock()
        self.find_apps = mock.Mock(return_value=[blog, shop])
        self.shutdown = threading.Event()
        self.out = io.StringIO()
        self.logger = mock.Mock()
        self.watcher = DirectoryWatcher(
            self.supervisor, [self.tmpdir, self.other], self.find_apps,
            self.shutdown, Console(self.out), 0.05, self.logger)

    def tearDown(self):
        self.shutdown.set()
        shutil.rmtree(self.tmpdir)
        shutil.rmtree(self.other)

    def touch(self, directory, offset=10):
        mtime = os.stat(directory).st_mtime + offset
        os.utime(directory, (mtime, mtime))

    def test_app_table(self):
        self.assertEqual(app_table([blog, shop]), [
            " Host name                     Directory",
            "-" * 60,
            " blog                          /srv/blog",
            " shop                          /srv/shop",
        ])

    def test_no_change(self):
        self.assertFalse(self.watcher.check())
        self.supervisor.reload.assert_not_called()
        self.assertEqual(self.out.getvalue(), "")

    def test_one_reload_per_batch(self):
        os.mkdir(os.path.join(self.tmpdir, "blog"))
        os.mkdir(os.path.join(self.tmpdir, "shop"))
        self.touch(self.tmpdir)
        self.touch(self.other)
        self.assertTrue(self.watcher.check())
        self.supervisor.reload.assert_called_once_with([blog, shop])
        self.assertFalse(self.watcher.check())
        self.assertEqual(self.supervisor.reload.call_count, 1)
        self.assertTrue(self.watcher.watching)

        lines = self.out.getvalue().splitlines()
        self.assertTrue(lines[0].endswith(": redeploying applications ***"))
        self.assertEqual(lines[1:], ["Now serving these applications:"]
                         + app_table([blog, shop]) + ["-" * 60])

    def test_removed_directory(self):
        shutil.rmtree(self.other)
        self.assertTrue(self.watcher.check())
        self.assertIsNone(self.watcher.mtimes[1])
        os.mkdir(self.other)

    def test_server_gone(self):
        self.watcher.grace_period = 0.01
        self.supervisor.reload.side_effect = NotRunningError("gone")
        self.touch(self.tmpdir)
        self.watcher.check()
        self.assertFalse(self.watcher.watching)
        self.assertIn("*** Error: unable to retrieve the web server's PID"
                      " (gone).\n", self.out.getvalue())

    def test_server_gone_while_shutting_down(self):
        self.supervisor.reload.side_effect = NotRunningError("gone")
        self.shutdown.set()
        self.touch(self.tmpdir)
        self.watcher.check()
        self.assertFalse(self.watcher.watching)
        self.assertNotIn("*** Error", self.out.getvalue())

    def test_signal_not_delivered(self):
        self.supervisor.reload.side_effect = SignalDeliveryError(
            42, "Operation not permitted")
        self.touch(self.tmpdir)
        self.watcher.check()
        self.assertFalse(self.watcher.watching)
        self.logger.error.assert_called_once_with(
            "can't signal process 42: Operation not permitted")

    def test_materialization_failure(self):
        self.supervisor.reload.side_effect = ConfigMaterializationError(
            "disk full")
        self.touch(self.tmpdir)
        self.watcher.check()
        self.assertTrue(self.watcher.watching)
        self.logger.error.assert_called_once_with("disk full")

    def test_invalid_app_config(self):
        self.find_apps.side_effect = ZConfig.ConfigurationError("bad")
        self.touch(self.tmpdir)
        self.watcher.check()
        self.supervisor.reload.assert_not_called()
        self.assertTrue(self.watcher.watching)
        self.assertEqual(self.logger.error.call_count, 1)

    def test_run(self):
        self.watcher.start()
        time.sleep(0.1)
        self.touch(self.tmpdir)
        deadline = time.time() + 5
        while (not self.supervisor.reload.called
               and time.time() < deadline):
            time.sleep(0.02)
        self.assertEqual(self.supervisor.reload.call_count, 1)
        self.shutdown.set()
        self.watcher.join(1)
        self.assertFalse(self.watcher.is_alive())

    def test_run_stops_when_the_server_is_gone(self):
        self.watcher.grace_period = 0.01
        self.supervisor.reload.side_effect = NotRunningError("gone")
        self.watcher.start()
        time.sleep(0.1)
        self.touch(self.tmpdir)
        self.watcher.join(5)
        self.assertFalse(self.watcher.is_alive())
        self.assertFalse(self.shutdown.is_set())


def test_suite():
    return unittest.defaultTestLoader.loadTestsFromTestCase(WatcherTests)
