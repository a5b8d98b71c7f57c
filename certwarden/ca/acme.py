#!/usr/bin/env python3
#
# certwarden/ca/acme.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight ACME v2 client (HTTP-01 via webroot) for Let's Encrypt."""

from __future__ import annotations

import asyncio
import base64
import email.utils
import hashlib
import json
import logging
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from ..models.certificates import CertificateRecord, DomainSet
from ..utils.files import atomic_write_bytes, atomic_write_text
from ..utils.time import utcnow
from .base import (
	DEFAULT_RATE_LIMIT_RETRY,
	CaError,
	InvalidRequestError,
	RateLimitedError,
	TransientCaError,
	ValidationFailedError,
	challenge_dir,
)

_log = logging.getLogger(__name__)

__all__ = [
	"AcmeCertificateAuthority",
	"error_from_problem",
	"error_from_response",
]

_PROBLEM_PREFIX = "urn:ietf:params:acme:error:"

# Problem types that mean "the CA could not reach or verify the domain"
_VALIDATION_PROBLEMS = frozenset({
	"unauthorized",
	"connection",
	"dns",
	"incorrectResponse",
	"caa",
	"tls",
})

# Problem types that will fail identically on every retry
_INVALID_PROBLEMS = frozenset({
	"malformed",
	"rejectedIdentifier",
	"invalidContact",
	"unsupportedContact",
	"unsupportedIdentifier",
	"badCSR",
	"badPublicKey",
	"badSignatureAlgorithm",
	"externalAccountRequired",
	"userActionRequired",
})


# ---------------------------------------------------------------------------
# Encoding helpers
# ---------------------------------------------------------------------------

def _b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def _private_pem(key: rsa.RSAPrivateKey) -> bytes:
	return key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	)


def _jwk_thumbprint(jwk: dict) -> str:
	"""JWK thumbprint (RFC 7638) of an EC or RSA public key."""
	if "kty" not in jwk:
		raise ValueError("Missing kty in JWK")
	if jwk["kty"] == "EC":
		canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	elif jwk["kty"] == "RSA":
		canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	else:
		raise ValueError(f"Unsupported key type: {jwk['kty']}")
	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return _b64url(hashlib.sha256(canonical_json.encode("utf-8")).digest())


# ---------------------------------------------------------------------------
# Problem document → CaError
# ---------------------------------------------------------------------------

def _parse_retry_after(value: Optional[str]) -> timedelta:
	"""Retry-After as delta-seconds or HTTP-date; defaults to one hour."""
	if not value:
		return DEFAULT_RATE_LIMIT_RETRY
	value = value.strip()
	if value.isdigit():
		return timedelta(seconds=int(value))
	try:
		when = email.utils.parsedate_to_datetime(value)
	except (TypeError, ValueError):
		return DEFAULT_RATE_LIMIT_RETRY
	if when.tzinfo is None:
		return DEFAULT_RATE_LIMIT_RETRY
	return max(when - utcnow(), timedelta(0))


def error_from_problem(
	problem: dict,
	*,
	action: str,
	status: Optional[int] = None,
	retry_after: Optional[timedelta] = None,
) -> CaError:
	"""Map an RFC 8555 problem document onto the CaError taxonomy."""
	ptype = str(problem.get("type", ""))
	short = ptype[len(_PROBLEM_PREFIX):] if ptype.startswith(_PROBLEM_PREFIX) else ptype
	detail = str(problem.get("detail", "")) or short or "unknown error"
	subproblems = problem.get("subproblems") or []
	if subproblems:
		names = ", ".join(
			str(sp.get("identifier", {}).get("value", "?")) + ": " + str(sp.get("detail", ""))
			for sp in subproblems
			if isinstance(sp, dict)
		)
		if names:
			detail = f"{detail} [{names}]"
	message = f"{action}: {detail}" + (f" ({short})" if short else "")

	if short == "rateLimited" or status == 429:
		return RateLimitedError(message, retry_after or DEFAULT_RATE_LIMIT_RETRY)
	if short in _VALIDATION_PROBLEMS:
		return ValidationFailedError(message)
	if short in _INVALID_PROBLEMS:
		return InvalidRequestError(message)
	return TransientCaError(message)


def error_from_response(resp: httpx.Response, action: str) -> CaError:
	"""Build a CaError from a failed ACME HTTP response."""
	try:
		problem = resp.json()
		if not isinstance(problem, dict):
			raise ValueError("problem document is not an object")
	except ValueError:
		problem = {"detail": resp.text[:200] or f"HTTP {resp.status_code}"}
	return error_from_problem(
		problem,
		action=action,
		status=resp.status_code,
		retry_after=_parse_retry_after(resp.headers.get("Retry-After")),
	)


def _is_bad_nonce(resp: httpx.Response) -> bool:
	if resp.status_code != 400:
		return False
	try:
		return resp.json().get("type") == _PROBLEM_PREFIX + "badNonce"
	except (ValueError, AttributeError):
		return False


# ---------------------------------------------------------------------------
# ACME session
# ---------------------------------------------------------------------------

class _AcmeSession:
	"""One ACME conversation: account, order, challenges, finalize, download."""

	def __init__(
		self,
		directory_url: str,
		account_dir: Path,
		*,
		timeout: float,
		poll_attempts: int,
		poll_delay: float,
		transport: httpx.AsyncBaseTransport | None,
		sleep: Callable[[float], Awaitable[None]],
	) -> None:
		self.directory_url = directory_url
		self.account_dir = account_dir
		self.timeout = timeout
		self.poll_attempts = poll_attempts
		self.poll_delay = poll_delay
		self._transport = transport
		self._sleep = sleep
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.account_key: Optional[ec.EllipticCurvePrivateKey] = None
		self.account_url: Optional[str] = None
		self.http_client: Optional[httpx.AsyncClient] = None

		self.account_key_path = account_dir / "account_key.pem"
		self.account_url_path = account_dir / "account_url.txt"
		self.account_thumbprint_path = account_dir / "account_thumbprint.txt"

	async def __aenter__(self) -> _AcmeSession:
		self.http_client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
		return self

	async def __aexit__(self, *args) -> None:
		if self.http_client:
			await self.http_client.aclose()

	def _client(self) -> httpx.AsyncClient:
		if not self.http_client:
			raise RuntimeError("HTTP client not initialized")
		return self.http_client

	async def _fetch_directory(self) -> None:
		resp = await self._client().get(self.directory_url)
		if resp.status_code != 200:
			raise error_from_response(resp, "Fetching ACME directory")
		self.directory = resp.json()

	async def _get_nonce(self) -> str:
		"""Use the stored replay nonce, else ask newNonce (HEAD, then GET)."""
		if self.nonce:
			nonce, self.nonce = self.nonce, None
			return nonce
		client = self._client()
		resp = await client.head(self.directory["newNonce"])
		if "Replay-Nonce" in resp.headers:
			return resp.headers["Replay-Nonce"]
		resp = await client.get(self.directory["newNonce"])
		if "Replay-Nonce" not in resp.headers:
			raise TransientCaError("Failed to obtain ACME nonce")
		return resp.headers["Replay-Nonce"]

	def _load_or_create_account_key(self) -> ec.EllipticCurvePrivateKey:
		if self.account_key_path.exists():
			key = serialization.load_pem_private_key(self.account_key_path.read_bytes(), password=None)
			if isinstance(key, ec.EllipticCurvePrivateKey):
				return key
			raise InvalidRequestError(f"ACME account key {self.account_key_path} is not an EC key")

		key = ec.generate_private_key(ec.SECP256R1())
		key_pem = key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)
		atomic_write_bytes(self.account_key_path, key_pem, mode=0o600)
		_log.info("ACME_ACCOUNT created new account key in %s", self.account_dir)
		return key

	def _get_jwk(self) -> dict:
		if not self.account_key:
			raise RuntimeError("Account key not loaded")
		numbers = self.account_key.public_key().public_numbers()
		# P-256 coordinates are 32 bytes each
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": _b64url(numbers.x.to_bytes(32, "big")),
			"y": _b64url(numbers.y.to_bytes(32, "big")),
		}

	def _sign_payload(self, payload: bytes) -> bytes:
		"""ES256 signature as raw ``r || s``."""
		if not self.account_key:
			raise RuntimeError("Account key not loaded")
		r, s = decode_dss_signature(self.account_key.sign(payload, ec.ECDSA(hashes.SHA256())))
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")

	async def _signed_request(self, url: str, payload: Optional[dict], *, retry_bad_nonce: bool = True) -> httpx.Response:
		"""POST a JWS to ``url``; ``payload=None`` is POST-as-GET."""
		protected: dict = {"alg": "ES256", "nonce": await self._get_nonce(), "url": url}
		if self.account_url:
			protected["kid"] = self.account_url
		else:
			protected["jwk"] = self._get_jwk()

		protected_b64 = _b64url(json.dumps(protected).encode("utf-8"))
		payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode("utf-8"))
		signature = self._sign_payload(f"{protected_b64}.{payload_b64}".encode("ascii"))

		resp = await self._client().post(
			url,
			json={"protected": protected_b64, "payload": payload_b64, "signature": _b64url(signature)},
			headers={"Content-Type": "application/jose+json"},
		)
		if "Replay-Nonce" in resp.headers:
			self.nonce = resp.headers["Replay-Nonce"]

		if retry_bad_nonce and _is_bad_nonce(resp):
			_log.debug("ACME_NONCE rejected, retrying once")
			return await self._signed_request(url, payload, retry_bad_nonce=False)
		return resp

	async def register_or_fetch_account(self, contact_email: str) -> str:
		"""Reuse the stored account when its key thumbprint matches, else register."""
		await self._fetch_directory()
		self.account_dir.mkdir(parents=True, exist_ok=True)
		self.account_key = self._load_or_create_account_key()
		current_thumbprint = _jwk_thumbprint(self._get_jwk())

		if self.account_url_path.exists():
			stored = self.account_thumbprint_path.read_text().strip() if self.account_thumbprint_path.exists() else ""
			if stored == current_thumbprint:
				self.account_url = self.account_url_path.read_text().strip()
				_log.debug("ACME_ACCOUNT reusing %s", self.account_url)
				return self.account_url
			_log.warning("ACME_ACCOUNT key thumbprint changed, re-registering")
			self.account_url_path.unlink(missing_ok=True)
			self.account_thumbprint_path.unlink(missing_ok=True)

		resp = await self._signed_request(
			self.directory["newAccount"],
			{"termsOfServiceAgreed": True, "contact": [f"mailto:{contact_email}"]},
		)
		if resp.status_code not in (200, 201):
			raise error_from_response(resp, "Registering ACME account")

		account_url = resp.headers.get("Location")
		if not account_url:
			raise TransientCaError("No account URL in ACME newAccount response")
		self.account_url = account_url
		atomic_write_text(self.account_url_path, account_url)
		atomic_write_text(self.account_thumbprint_path, current_thumbprint)
		_log.info("ACME_ACCOUNT registered %s", account_url)
		return account_url

	async def new_order(self, domain_set: DomainSet) -> tuple[str, dict]:
		"""One order whose identifiers are every name of the set."""
		resp = await self._signed_request(
			self.directory["newOrder"],
			{"identifiers": [{"type": "dns", "value": name} for name in domain_set]},
		)
		if resp.status_code not in (200, 201):
			raise error_from_response(resp, "Creating order")
		order_url = resp.headers.get("Location")
		if not order_url:
			raise TransientCaError("No order URL in ACME newOrder response")
		return order_url, resp.json()

	async def get_authorization(self, auth_url: str) -> dict:
		resp = await self._signed_request(auth_url, None)
		if resp.status_code != 200:
			raise error_from_response(resp, "Fetching authorization")
		return resp.json()

	def http01_challenge(self, authorization: dict) -> tuple[str, str, str]:
		"""Return ``(challenge_url, token, key_authorization)`` for HTTP-01."""
		thumbprint = _jwk_thumbprint(self._get_jwk())
		for challenge in authorization.get("challenges", []):
			if challenge.get("type") == "http-01":
				token = challenge["token"]
				return challenge["url"], token, f"{token}.{thumbprint}"
		name = authorization.get("identifier", {}).get("value", "?")
		raise InvalidRequestError(f"CA offered no HTTP-01 challenge for {name}")

	async def respond_to_challenge(self, challenge_url: str) -> None:
		resp = await self._signed_request(challenge_url, {})
		if resp.status_code not in (200, 202):
			raise error_from_response(resp, "Responding to challenge")

	async def _order_failure(self, order: dict) -> CaError:
		"""Explain an invalid order through its failed authorization, if any."""
		if isinstance(order.get("error"), dict):
			return error_from_problem(order["error"], action="Order failed")
		for auth_url in order.get("authorizations", []):
			try:
				authorization = await self.get_authorization(auth_url)
			except CaError:
				continue
			if authorization.get("status") != "invalid":
				continue
			name = authorization.get("identifier", {}).get("value", "?")
			for challenge in authorization.get("challenges", []):
				if isinstance(challenge.get("error"), dict):
					return error_from_problem(challenge["error"], action=f"Validation of {name} failed")
			return ValidationFailedError(f"Authorization for {name} is invalid")
		return ValidationFailedError(f"Order failed with status {order.get('status')}")

	async def poll_order(self, order_url: str, until: tuple[str, ...]) -> dict:
		"""Poll the order until its status is in ``until``."""
		for _ in range(self.poll_attempts):
			resp = await self._signed_request(order_url, None)
			if resp.status_code != 200:
				raise error_from_response(resp, "Polling order")
			order = resp.json()
			status = order.get("status")
			if status in until:
				return order
			if status in ("invalid", "expired", "revoked", "deactivated"):
				raise await self._order_failure(order)
			await self._sleep(self.poll_delay)
		raise TransientCaError(f"Timeout waiting for order to reach {'/'.join(until)}")

	def _order_key_path(self, order_url: str) -> Path:
		return self.account_dir / "orders" / f"{hashlib.sha256(order_url.encode()).hexdigest()[:32]}.pem"

	def _load_order_key(self, path: Path) -> Optional[rsa.RSAPrivateKey]:
		try:
			key = serialization.load_pem_private_key(path.read_bytes(), password=None)
		except (OSError, ValueError, TypeError):
			return None
		return key if isinstance(key, rsa.RSAPrivateKey) else None

	async def finalize_order(self, order_url: str, order: dict, domain_set: DomainSet) -> tuple[bytes, bytes]:
		"""Submit a CSR for every name and download the issued chain.

		The certificate key is kept under ``orders/`` until the download
		succeeds, so an order the CA already finalized (download failed last
		time) is collected instead of finalized twice.
		"""
		key_path = self._order_key_path(order_url)
		if order.get("status") == "valid":
			domain_key = self._load_order_key(key_path)
			if domain_key is None:
				raise InvalidRequestError(
					f"Order {order_url} for {domain_set} is already valid but its certificate key is not held here"
				)
			_log.info("ACME_ORDER_VALID collecting certificate of finalized order %s", order_url)
		else:
			domain_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
			atomic_write_bytes(key_path, _private_pem(domain_key), mode=0o600)
			csr = (
				x509.CertificateSigningRequestBuilder()
				.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain_set.primary)]))
				.add_extension(
					x509.SubjectAlternativeName([x509.DNSName(name) for name in domain_set]),
					critical=False,
				)
				.sign(domain_key, hashes.SHA256())
			)
			csr_der = csr.public_bytes(serialization.Encoding.DER)

			resp = await self._signed_request(order["finalize"], {"csr": _b64url(csr_der)})
			if resp.status_code not in (200, 201):
				raise error_from_response(resp, "Finalizing order")
			order = resp.json()
			if order.get("status") != "valid":
				order = await self.poll_order(order_url, ("valid",))

		cert_url = order.get("certificate")
		if not cert_url:
			raise TransientCaError("No certificate URL in finalized order")
		cert_resp = await self._signed_request(cert_url, None)
		if cert_resp.status_code != 200:
			raise error_from_response(cert_resp, "Downloading certificate")
		cert_pem = cert_resp.text.encode("utf-8")

		try:
			leaf_key = x509.load_pem_x509_certificate(cert_pem).public_key()
		except ValueError as exc:
			raise TransientCaError(f"CA returned an unusable certificate: {exc}") from exc
		if not isinstance(leaf_key, rsa.RSAPublicKey) or leaf_key.public_numbers() != domain_key.public_key().public_numbers():
			raise InvalidRequestError(f"Certificate of order {order_url} does not match the key submitted for it")

		key_path.unlink(missing_ok=True)
		return cert_pem, _private_pem(domain_key)


# ---------------------------------------------------------------------------
# Public client
# ---------------------------------------------------------------------------

class AcmeCertificateAuthority:
	"""CertificateAuthority backed by an ACME v2 directory (Let's Encrypt by default).

	The account key and URL are kept under ``account_root/<directory host>``
	so production and staging accounts never mix.
	"""

	def __init__(
		self,
		directory_url: str,
		account_root: Path,
		*,
		timeout: float = 30.0,
		poll_attempts: int = 30,
		poll_delay: float = 2.0,
		transport: httpx.AsyncBaseTransport | None = None,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	) -> None:
		self.directory_url = directory_url
		self.account_dir = account_root / (urlparse(directory_url).hostname or "default")
		self.timeout = timeout
		self.poll_attempts = poll_attempts
		self.poll_delay = poll_delay
		self._transport = transport
		self._sleep = sleep

	def _session(self) -> _AcmeSession:
		return _AcmeSession(
			self.directory_url,
			self.account_dir,
			timeout=self.timeout,
			poll_attempts=self.poll_attempts,
			poll_delay=self.poll_delay,
			transport=self._transport,
			sleep=self._sleep,
		)

	async def request_certificate(
		self,
		domain_set: DomainSet,
		contact_email: str,
		validation_webroot: Path,
	) -> CertificateRecord:
		"""Validate every name over HTTP-01 and issue one certificate for the set."""
		token_dir = challenge_dir(validation_webroot)
		published: list[Path] = []
		_log.info("ACME_ORDER domains=%s directory=%s", domain_set, self.directory_url)
		try:
			async with self._session() as session:
				account_url = await session.register_or_fetch_account(contact_email)
				order_url, order = await session.new_order(domain_set)

				if order.get("status") not in ("ready", "valid"):
					for auth_url in order.get("authorizations", []):
						authorization = await session.get_authorization(auth_url)
						if authorization.get("status") == "valid":
							continue
						challenge_url, token, key_auth = session.http01_challenge(authorization)
						token_dir.mkdir(parents=True, exist_ok=True)
						token_path = token_dir / token
						token_path.write_text(key_auth, encoding="ascii")
						token_path.chmod(0o644)
						published.append(token_path)
						await session.respond_to_challenge(challenge_url)
					order = await session.poll_order(order_url, ("ready", "valid"))

				cert_pem, key_pem = await session.finalize_order(order_url, order, domain_set)
		except httpx.HTTPError as exc:
			raise TransientCaError(f"ACME request failed: {exc}") from exc
		except (KeyError, TypeError, json.JSONDecodeError) as exc:
			raise TransientCaError(f"Unexpected ACME response: {exc}") from exc
		finally:
			for path in published:
				path.unlink(missing_ok=True)

		try:
			record = CertificateRecord.from_pem(domain_set, cert_pem, key_pem, account_url)
		except ValueError as exc:
			raise TransientCaError(f"CA returned an unusable certificate: {exc}") from exc
		_log.info("ACME_ISSUED domains=%s expires=%s", domain_set, record.expires_at.isoformat())
		return record
