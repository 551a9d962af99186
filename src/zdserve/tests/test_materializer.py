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
"""Test suite for materializer.py."""
import os
import shutil
import stat
import tempfile
import unittest

from zdserve.apps import AppTarget
from zdserve.materializer import ConfigMaterializer, TemplateMaterializer

settings = dict(
    pid_file="/srv/tmp/pids/zdserve.3000.pid",
    log_file="/srv/log/zdserve.3000.log",
    listen="0.0.0.0:3000",
    environment="development",
    max_pool_size=6,
    min_instances=1,
)

blog = AppTarget(("blog", "www.blog"), "/srv/blog")
shop = AppTarget(("shop", "www.shop"), "/srv/shop", "production", 2)


class TemplateMaterializerTests(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = os.path.join(self.tmpdir, "server.conf")

    def tearDown(self):
        shutil.rmtree(self.tmpdir)

    def test_render(self):
        text = TemplateMaterializer(self.path, settings).render([blog, shop])
        self.assertIn("pid /srv/tmp/pids/zdserve.3000.pid;\n", text)
        self.assertIn("error_log /srv/log/zdserve.3000.log info;\n", text)
        self.assertIn("passenger_max_pool_size 6;\n", text)
        self.assertIn(
            "    server {\n"
            "        listen 0.0.0.0:3000;\n"
            "        server_name blog www.blog;\n"
            "        root /srv/blog/public;\n"
            "        passenger_enabled on;\n"
            "        passenger_app_env development;\n"
            "        passenger_min_instances 1;\n"
            "    }\n"
            "    server {\n"
            "        listen 0.0.0.0:3000;\n"
            "        server_name shop www.shop;\n"
            "        root /srv/shop/public;\n"
            "        passenger_enabled on;\n"
            "        passenger_app_env production;\n"
            "        passenger_min_instances 2;\n"
            "    }\n"
            "}\n", text)

    def test_render_without_apps(self):
        text = TemplateMaterializer(self.path, settings).render([])
        self.assertNotIn("server {", text)
        self.assertTrue(text.endswith("passenger_max_pool_size 6;\n\n}\n"))

    def test_custom_templates(self):
        materializer = TemplateMaterializer(
            self.path, settings, "listen ${listen};\n${servers}",
            "host ${server_names} -> ${root};\n")
        self.assertEqual(materializer.render([blog]),
                         "listen 0.0.0.0:3000;\n"
                         "host blog www.blog -> /srv/blog;\n")

    def test_from_file(self):
        template = os.path.join(self.tmpdir, "nginx.conf.in")
        with open(template, "w") as f:
            f.write("pid ${pid_file};\n${servers}")
        materializer = TemplateMaterializer.from_file(
            self.path, settings, template)
        self.assertTrue(materializer.render([blog]).startswith(
            "pid /srv/tmp/pids/zdserve.3000.pid;\n    server {\n"))

    def test_unknown_placeholder(self):
        materializer = TemplateMaterializer(self.path, settings, "${user}")
        self.assertRaises(KeyError, materializer.render, [blog])

    def test_materialize_and_remove(self):
        materializer = TemplateMaterializer(self.path, settings)
        materializer.materialize([blog])
        with open(self.path) as f:
            self.assertEqual(f.read(), materializer.render([blog]))
        self.assertEqual(stat.S_IMODE(os.stat(self.path).st_mode), 0o644)

        # Rewriting keeps the same file.
        inode = os.stat(self.path).st_ino
        materializer.materialize([blog, shop])
        self.assertEqual(os.stat(self.path).st_ino, inode)

        materializer.remove()
        self.assertFalse(os.path.exists(self.path))
        self.assertRaises(OSError, materializer.remove)

    def test_interface(self):
        self.assertRaises(NotImplementedError,
                          ConfigMaterializer().materialize, [blog])


def test_suite():
    return unittest.defaultTestLoader.loadTestsFromTestCase(
        TemplateMaterializerTests)
