#!/usr/bin/env python3
#
# certwarden/proxy/nginx_config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Nginx configuration rendering for the challenge and secure profiles."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from ..ca.base import ACME_CHALLENGE_PATH
from ..models.profiles import ChallengeOnly, ProxyProfile, Secure, profile_marker

__all__ = ["NginxSettings", "render_profile"]

# Characters that would let a value escape its nginx directive
_UNSAFE_RE = re.compile(r"[;{}\s'\"\\]")

_PROXY_HEADERS = """\
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;"""


def _directive_value(value: str, what: str) -> str:
	if not value or _UNSAFE_RE.search(value):
		raise ValueError(f"Invalid {what} for nginx config: {value!r}")
	return value


@dataclass(frozen=True)
class NginxSettings:
	"""Proxy-side values that do not depend on the profile.

	``webroot`` is the ACME webroot as the Nginx process sees it.
	``api_domain`` is routed to the backend; every other name to the frontend.
	``dhparam`` is the DH parameter file as Nginx sees it; None omits ``ssl_dhparam``.
	"""
	webroot: str
	frontend_upstream: str = "http://frontend:80"
	backend_upstream: str = "http://backend:8080"
	api_domain: Optional[str] = None
	dhparam: Optional[str] = None

	def __post_init__(self) -> None:
		_directive_value(self.webroot, "webroot")
		_directive_value(self.frontend_upstream, "frontend upstream")
		_directive_value(self.backend_upstream, "backend upstream")
		if self.dhparam is not None:
			_directive_value(self.dhparam, "dhparam path")


def _acme_location(settings: NginxSettings) -> str:
	return f"""\
    # Let's Encrypt ACME challenge
    location {ACME_CHALLENGE_PATH} {{
        root {settings.webroot};
        try_files $uri =404;
    }}"""


def _proxy_location(path: str, upstream: str) -> str:
	# "/api/" strips the prefix the same way the frontend expects
	target = upstream.rstrip("/") + "/" if path != "/" else upstream
	return f"""\
    location {path} {{
        proxy_pass {target};
{_PROXY_HEADERS}
    }}"""


def _render_challenge(profile: ChallengeOnly, settings: NginxSettings) -> str:
	names = " ".join(profile.domain_set)
	return f"""\
{profile_marker(profile)}
# Auto-generated by CertWarden - plain HTTP while no certificate exists

server {{
    listen 80;
    listen [::]:80;
    server_name {names};

{_acme_location(settings)}

{_proxy_location("/", settings.frontend_upstream)}

{_proxy_location("/api/", settings.backend_upstream)}
}}
"""


def _tls_server(names: list[str], upstream: str, profile: Secure, settings: NginxSettings) -> str:
	dhparam = f"\n    ssl_dhparam {settings.dhparam};" if settings.dhparam else ""
	return f"""\
server {{
    listen 443 ssl;
    listen [::]:443 ssl;
    http2 on;
    server_name {" ".join(names)};

    ssl_certificate {profile.fullchain};
    ssl_certificate_key {profile.privkey};
    ssl_protocols TLSv1.2 TLSv1.3;
    ssl_prefer_server_ciphers off;
    ssl_session_cache shared:SSL:10m;
    ssl_session_timeout 1d;
    ssl_session_tickets off;{dhparam}

    add_header Strict-Transport-Security "max-age=63072000; includeSubDomains" always;
    add_header X-Content-Type-Options nosniff always;
    add_header X-Frame-Options SAMEORIGIN always;

{_proxy_location("/", upstream)}
}}"""


def _render_secure(profile: Secure, settings: NginxSettings) -> str:
	_directive_value(profile.fullchain, "certificate path")
	_directive_value(profile.privkey, "key path")
	api = settings.api_domain if settings.api_domain in profile.domain_set else None
	site_names = [name for name in profile.domain_set if name != api]
	servers = []
	if site_names:
		servers.append(_tls_server(site_names, settings.frontend_upstream, profile, settings))
	if api:
		servers.append(_tls_server([api], settings.backend_upstream, profile, settings))
	tls_block = "\n\n".join(servers)
	return f"""\
{profile_marker(profile)}
# Auto-generated by CertWarden - HTTPS termination

server {{
    listen 80;
    listen [::]:80;
    server_name {" ".join(profile.domain_set)};

{_acme_location(settings)}

    location / {{
        return 301 https://$host$request_uri;
    }}
}}

{tls_block}
"""


def render_profile(profile: ProxyProfile, settings: NginxSettings) -> str:
	"""Full nginx config for ``profile``; its first line is the profile marker."""
	if isinstance(profile, Secure):
		return _render_secure(profile, settings)
	if isinstance(profile, ChallengeOnly):
		return _render_challenge(profile, settings)
	raise TypeError(f"Unknown proxy profile: {profile!r}")
