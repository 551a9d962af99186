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
"""Test suite for process.py."""
import os
import shutil
import signal
import sys
import tempfile
import time
import unittest

import mock
import psutil

from zdserve.process import (
    ProcessHandle, SpawnError, find_program, signame, spawn)


def write(name, text, mode=0o644):
    with open(name, "w") as f:
        f.write(text)
    os.chmod(name, mode)


def read(name):
    try:
        with open(name) as f:
            return f.read()
    except FileNotFoundError:
        return ""


class ProcessTestBase(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def path(self, name):
        return os.path.join(self.tmpdir, name)


class FindProgramTests(ProcessTestBase):

    def test_on_path(self):
        self.assertEqual(os.path.basename(find_program("sh")), "sh")

    def test_not_on_path(self):
        with self.assertRaises(SpawnError) as cm:
            find_program("no-such-program-anywhere")
        self.assertEqual(cm.exception.program, "no-such-program-anywhere")
        self.assertTrue(cm.exception.reason.startswith("not found on PATH"))

    def test_no_such_file(self):
        with self.assertRaises(SpawnError) as cm:
            find_program(self.path("nginx"))
        self.assertEqual(cm.exception.reason, "no such file")

    def test_not_executable(self):
        write(self.path("nginx"), "#!/bin/sh\n")
        with self.assertRaises(SpawnError) as cm:
            find_program(self.path("nginx"))
        self.assertEqual(cm.exception.reason, "permission denied")


class SpawnTests(ProcessTestBase):

    def test_spawn_detaches(self):
        log = self.path("log")
        pid = spawn(["/bin/sh", "-c", "echo $$; echo oops >&2; exec sleep 30"],
                    log)
        try:
            deadline = time.time() + 5
            while read(log).count("\n") < 2 and time.time() < deadline:
                time.sleep(0.05)
            self.assertEqual(read(log), "%d\noops\n" % pid)
            process = psutil.Process(pid)
            self.assertNotEqual(process.ppid(), os.getpid())
            self.assertNotEqual(os.getsid(pid), os.getsid(0))
        finally:
            os.kill(pid, signal.SIGKILL)

    def test_exec_failure(self):
        write(self.path("garbage"), "\0\1\2\3", 0o755)
        with self.assertRaises(SpawnError) as cm:
            spawn([self.path("garbage")])
        self.assertIn("Exec format error", cm.exception.reason)

    def test_log_file_is_appended_to(self):
        log = self.path("log")
        write(log, "earlier\n")
        pid = spawn(["/bin/sh", "-c", "echo later"], log)
        handle = ProcessHandle(self.path("pid"))
        deadline = time.time() + 5
        while handle.is_alive(pid) and time.time() < deadline:
            time.sleep(0.05)
        self.assertEqual(read(log), "earlier\nlater\n")


class ProcessHandleTests(ProcessTestBase):

    def setUp(self):
        ProcessTestBase.setUp(self)
        self.logger = mock.Mock()
        self.handle = ProcessHandle(self.path("web.pid"), self.logger)

    def test_read_pid(self):
        self.assertIsNone(self.handle.read_pid())
        write(self.path("web.pid"), "")
        self.assertIsNone(self.handle.read_pid())
        write(self.path("web.pid"), "1234\n")
        self.assertEqual(self.handle.read_pid(), 1234)
        self.logger.warning.assert_not_called()

    def test_read_garbled_pid(self):
        for data in ("garbage", "-5", "0"):
            write(self.path("web.pid"), data)
            self.assertIsNone(self.handle.read_pid())
        self.logger.warning.assert_called_once_with(
            "PID file %s holds 'garbage', not a pid" % self.path("web.pid"))

    def test_is_alive(self):
        self.assertTrue(self.handle.is_alive(os.getpid()))
        self.assertFalse(self.handle.is_alive(None))
        self.assertFalse(self.handle.is_alive(0))

    def test_zombies_are_dead(self):
        pid = os.fork()
        if pid == 0:  # pragma: nocover
            os._exit(0)
        try:
            deadline = time.time() + 5
            while (psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
                   and time.time() < deadline):
                time.sleep(0.05)
            self.assertFalse(self.handle.is_alive(pid))
        finally:
            os.waitpid(pid, 0)
        self.assertFalse(self.handle.is_alive(pid))

    def test_kill(self):
        self.assertIsNone(self.handle.kill(os.getpid(), 0))
        self.assertEqual(self.handle.kill(None, signal.SIGTERM),
                         "no process running")
        with mock.patch("os.kill") as kill:
            kill.side_effect = PermissionError(1, "Operation not permitted")
            self.assertEqual(self.handle.kill(1, signal.SIGHUP),
                             "[Errno 1] Operation not permitted")


class SignameTests(unittest.TestCase):

    def test_signame(self):
        self.assertEqual(signame(signal.SIGTERM), "SIGTERM")
        self.assertEqual(signame(signal.SIGHUP), "SIGHUP")
        self.assertEqual(signame(0), "signal 0")


def test_suite():
    suite = unittest.TestSuite()
    if os.name == "posix":
        loader = unittest.defaultTestLoader
        for case in (FindProgramTests, SpawnTests, ProcessHandleTests,
                     SignameTests):
            suite.addTest(loader.loadTestsFromTestCase(case))
    return suite
