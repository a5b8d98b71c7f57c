#!/usr/bin/env python3
#
# certwarden/proxy/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Reverse proxy management powered by Nginx."""

from .dhparam import ensure_dhparam
from .nginx_config import NginxSettings, render_profile
from .nginx_process import NginxController
from .switcher import (
	ProxyConfigSwitcher,
	ProxyReloadError,
	ProxyValidationError,
	SwitchError,
)

__all__ = [
	"NginxController",
	"NginxSettings",
	"ProxyConfigSwitcher",
	"ProxyReloadError",
	"ProxyValidationError",
	"SwitchError",
	"ensure_dhparam",
	"render_profile",
]
