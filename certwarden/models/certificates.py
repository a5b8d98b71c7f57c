#!/usr/bin/env python3
#
# certwarden/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Domain sets and certificate records."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from cryptography import x509
from cryptography.x509.oid import NameOID

from ..utils.time import ensure_utc

# RFC 1123 hostname
HOSTNAME_RE = re.compile(
	r"^(?=.{1,253}$)[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
)

_PEM_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_END = b"-----END CERTIFICATE-----"


def normalize_hostname(name: str) -> str:
	"""Lower-case and strip a trailing root dot."""
	return name.strip().lower().rstrip(".")


@dataclass(frozen=True)
class DomainSet:
	"""Hostnames that must all appear on one certificate.

	The first name is the primary domain; it names the certificate on disk
	and in the proxy configuration. Duplicates are dropped keeping the first
	occurrence, so ``DomainSet(("a.test", "A.test."))`` has one entry.
	"""
	names: tuple[str, ...]

	def __post_init__(self) -> None:
		seen: list[str] = []
		for raw in self.names:
			if not isinstance(raw, str):
				raise ValueError(f"Hostname must be a string, got {type(raw).__name__}")
			name = normalize_hostname(raw)
			if not HOSTNAME_RE.match(name):
				raise ValueError(f"Invalid hostname: {raw!r}")
			if name not in seen:
				seen.append(name)
		if not seen:
			raise ValueError("DomainSet must contain at least one hostname")
		object.__setattr__(self, "names", tuple(seen))

	@classmethod
	def from_parts(cls, primary: str, api_domain: str | None = None, include_www: bool = True) -> DomainSet:
		"""Build the usual primary + ``www`` alias + API subdomain set."""
		primary = normalize_hostname(primary)
		names = [primary]
		if include_www and not primary.startswith("www."):
			names.append(f"www.{primary}")
		if api_domain:
			names.append(api_domain)
		return cls(tuple(names))

	@property
	def primary(self) -> str:
		return self.names[0]

	def __iter__(self):
		return iter(self.names)

	def __len__(self) -> int:
		return len(self.names)

	def __contains__(self, name: object) -> bool:
		return isinstance(name, str) and normalize_hostname(name) in self.names

	def same_names(self, other: DomainSet) -> bool:
		"""True when both sets cover exactly the same hostnames (order-insensitive)."""
		return set(self.names) == set(other.names)

	def __str__(self) -> str:
		return ",".join(self.names)


def split_pem_chain(pem: bytes) -> list[bytes]:
	"""Split a PEM bundle into individual certificate blocks (leaf first)."""
	blocks: list[bytes] = []
	data = pem
	while _PEM_BEGIN in data:
		start = data.find(_PEM_BEGIN)
		end = data.find(_PEM_END, start)
		if end == -1:
			break
		end += len(_PEM_END)
		blocks.append(data[start:end])
		data = data[end:]
	return blocks


def load_leaf(certificate_chain: bytes) -> x509.Certificate:
	"""Parse the leaf (first) certificate of a PEM chain."""
	blocks = split_pem_chain(certificate_chain)
	if not blocks:
		raise ValueError("No PEM certificate found in chain")
	return x509.load_pem_x509_certificate(blocks[0])


@dataclass(frozen=True)
class CertificateRecord:
	"""An issued certificate chain with its private key.

	``private_key`` is excluded from ``repr`` so a record can be logged or
	put in an exception message without leaking key material.
	"""
	domain_set: DomainSet
	certificate_chain: bytes
	private_key: bytes = field(repr=False)
	issued_at: datetime
	expires_at: datetime
	issuer_account_ref: str = ""

	def __post_init__(self) -> None:
		object.__setattr__(self, "issued_at", ensure_utc(self.issued_at))
		object.__setattr__(self, "expires_at", ensure_utc(self.expires_at))
		if self.expires_at <= self.issued_at:
			raise ValueError(
				f"Certificate for {self.domain_set} expires ({self.expires_at.isoformat()}) "
				f"before it is issued ({self.issued_at.isoformat()})"
			)
		if not self.private_key:
			raise ValueError("Certificate record requires a private key")

	@classmethod
	def from_pem(
		cls,
		domain_set: DomainSet,
		certificate_chain: bytes,
		private_key: bytes,
		issuer_account_ref: str = "",
	) -> CertificateRecord:
		"""Build a record, reading the validity window from the leaf certificate."""
		leaf = load_leaf(certificate_chain)
		return cls(
			domain_set=domain_set,
			certificate_chain=certificate_chain,
			private_key=private_key,
			issued_at=leaf.not_valid_before_utc,
			expires_at=leaf.not_valid_after_utc,
			issuer_account_ref=issuer_account_ref,
		)

	def leaf(self) -> x509.Certificate:
		return load_leaf(self.certificate_chain)

	def subject_names(self) -> list[str]:
		"""DNS names of the leaf certificate (SAN, falling back to the CN)."""
		cert = self.leaf()
		try:
			san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
			return [normalize_hostname(n) for n in san.value.get_values_for_type(x509.DNSName)]
		except x509.ExtensionNotFound:
			return [
				normalize_hostname(str(attr.value))
				for attr in cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
			]

	def covers(self, domain_set: DomainSet | Iterable[str]) -> bool:
		"""True when every name of ``domain_set`` is on the leaf certificate."""
		present = set(self.subject_names())
		return all(normalize_hostname(n) in present for n in domain_set)

	def issuer_name(self) -> str:
		attrs = self.leaf().issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
		return str(attrs[0].value) if attrs else "Unknown"

	def serial_hex(self) -> str:
		return format(self.leaf().serial_number, "x")
