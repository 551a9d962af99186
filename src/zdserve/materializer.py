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
"""Writing the configuration file the web server reads."""
import os
import string

SERVER_TEMPLATE = """\
    server {
        listen ${listen};
        server_name ${server_names};
        root ${root}/public;
        passenger_enabled on;
        passenger_app_env ${environment};
        passenger_min_instances ${min_instances};
    }
"""

TEMPLATE = """\
# Generated by zdserve; changes will be overwritten.
master_process on;
daemon on;
worker_processes 1;
error_log ${log_file} info;
pid ${pid_file};

events {
    worker_connections 1024;
}

http {
    access_log off;
    keepalive_timeout 60;
    passenger_max_pool_size ${max_pool_size};

${servers}}
"""


class ConfigMaterializer:
    """Produces the configuration file the server reads when it starts or
    reloads.

    path is where the file goes; it must not change, since a running
    server rereads the file it was started with.
    """

    path = None

    def materialize(self, apps):
        """Write the configuration for serving apps to self.path."""
        raise NotImplementedError

    def remove(self):
        os.unlink(self.path)


class TemplateMaterializer(ConfigMaterializer):
    """Renders string.Template templates.

    settings provides pid_file, log_file, listen, environment,
    max_pool_size and min_instances.  Each app gets a server block;
    its own environment and min_instances win over the settings.
    """

    def __init__(self, path, settings, template=None, server_template=None):
        self.path = path
        self.settings = dict(settings)
        self.template = string.Template(template or TEMPLATE)
        self.server_template = string.Template(
            server_template or SERVER_TEMPLATE)

    @classmethod
    def from_file(cls, path, settings, filename):
        with open(filename) as f:
            return cls(path, settings, f.read())

    def render(self, apps):
        servers = "".join(self.render_server(app) for app in apps)
        return self.template.substitute(self.settings, servers=servers)

    def render_server(self, app):
        values = dict(self.settings)
        values.update(server_names=" ".join(app.server_names), root=app.root)
        if app.environment is not None:
            values["environment"] = app.environment
        if app.min_instances is not None:
            values["min_instances"] = app.min_instances
        return self.server_template.substitute(values)

    def materialize(self, apps):
        text = self.render(apps)
        with open(self.path, "w") as f:
            os.chmod(self.path, 0o644)
            f.write(text)
