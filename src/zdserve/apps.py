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
"""Finding the web applications to serve.

A directory is an application if it contains one of a few marker files.
An application may carry a zdserve.conf file overriding some of the
global settings for that application only.
"""
import collections
import os

import ZConfig

DEFAULT_MARKERS = ("config.ru", "config/environment.rb", "passenger_wsgi.py")

APP_CONFIG = "zdserve.conf"


class AppTarget(collections.namedtuple(
        "AppTarget", "server_names root environment min_instances",
        defaults=(None, None))):
    """A web application directory and the host names it answers to."""

    __slots__ = ()


def looks_like_app_directory(path, markers=DEFAULT_MARKERS):
    for marker in markers:
        if os.path.exists(os.path.join(path, marker)):
            return True
    return False


def server_names_for(path):
    """Return the virtual host names for an application directory.

      >>> server_names_for('/srv/blog')
      ('blog', 'www.blog')
      >>> server_names_for('/srv/www.example.com/')
      ('www.example.com',)
    """
    basename = os.path.basename(os.path.normpath(path))
    if basename.lower().startswith("www."):
        return (basename,)
    return (basename, "www." + basename)


def find_apps(directories=(), markers=DEFAULT_MARKERS):
    """Return the AppTargets found in directories.

    Each directory is either an application itself or is searched for
    application subdirectories.  Without directories, the current
    directory is used; if it is an application itself it answers to
    any host name.
    """
    apps = []
    if not directories:
        if looks_like_app_directory(".", markers):
            apps.append(_app(("_",), "."))
        else:
            apps.extend(_children(".", markers))
    else:
        for directory in directories:
            if looks_like_app_directory(directory, markers):
                apps.append(_app(server_names_for(directory), directory))
            else:
                apps.extend(_children(directory, markers))
    return apps


def directories_to_watch(directories=()):
    return list(directories) or ["."]


def _children(directory, markers):
    try:
        names = sorted(os.listdir(directory))
    except OSError:
        return []
    apps = []
    for name in names:
        path = os.path.join(directory, name)
        if os.path.isdir(path) and looks_like_app_directory(path, markers):
            apps.append(_app(server_names_for(path), path))
    return apps


def _app(server_names, path):
    root = os.path.abspath(path)
    settings = load_app_config(root)
    if settings is None:
        return AppTarget(tuple(server_names), root)
    return AppTarget(tuple(server_names), root,
                     settings.environment, settings.min_instances)


_app_schema = None


def load_app_config(root):
    """Load root/zdserve.conf; return None if there is none.

    Raise ZConfig.ConfigurationError if the file is invalid.
    """
    global _app_schema
    filename = os.path.join(root, APP_CONFIG)
    if not os.path.exists(filename):
        return None
    if _app_schema is None:
        _app_schema = ZConfig.loadSchema(
            os.path.join(os.path.dirname(__file__), "app.xml"))
    config, handlers = ZConfig.loadConfig(_app_schema, filename)
    return config
