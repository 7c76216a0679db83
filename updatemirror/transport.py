from __future__ import annotations

from dataclasses import dataclass
import logging
import ssl

import requests
from requests.adapters import HTTPAdapter
from urllib3 import PoolManager

from updatemirror.errors import ConfigError

log = logging.getLogger("updatemirror.transport")

USER_AGENT = "updatemirror/1.0"


@dataclass(frozen=True)
class TransportProfile:
    """TLS settings for one kind of endpoint.

    Profiles are handed to the session that talks to the endpoint. Process-wide
    SSL defaults are never touched.
    """

    name: str
    tls_min_version: ssl.TLSVersion | None = None
    ciphers: str | None = None
    verify: bool = True
    timeout_s: float = 30.0

    def ssl_context(self) -> ssl.SSLContext:
        ctx = ssl.create_default_context()
        try:
            if self.ciphers:
                ctx.set_ciphers(self.ciphers)
            if self.tls_min_version is not None:
                ctx.minimum_version = self.tls_min_version
        except (ssl.SSLError, ValueError) as exc:
            raise ConfigError(
                f"transport profile {self.name!r} is not supported by the local OpenSSL "
                f"({ssl.OPENSSL_VERSION}): {exc}; disable UM_LEGACY_TLS or use a TLS stack "
                "that still offers the legacy protocol"
            ) from exc
        if not self.verify:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx


DEFAULT_PROFILE = TransportProfile(name="default")

# The manifest endpoint only negotiates old protocol versions.
LEGACY_PROFILE = TransportProfile(
    name="legacy",
    tls_min_version=ssl.TLSVersion.TLSv1,
    ciphers="DEFAULT:@SECLEVEL=0",
)


class TLSProfileAdapter(HTTPAdapter):
    """HTTPS adapter that pins its pools to the profile's SSL context."""

    def __init__(self, profile: TransportProfile, **kwargs):
        self.profile = profile
        self._ssl_context = profile.ssl_context()
        super().__init__(**kwargs)

    def init_poolmanager(self, connections, maxsize, block=False, **pool_kwargs):
        pool_kwargs["ssl_context"] = self._ssl_context
        self.poolmanager = PoolManager(
            num_pools=connections,
            maxsize=maxsize,
            block=block,
            **pool_kwargs,
        )

    def proxy_manager_for(self, proxy, **proxy_kwargs):
        proxy_kwargs["ssl_context"] = self._ssl_context
        return super().proxy_manager_for(proxy, **proxy_kwargs)


def build_session(profile: TransportProfile = DEFAULT_PROFILE) -> requests.Session:
    # Retries are counted by the fetcher, so the adapter makes exactly one attempt.
    session = requests.Session()
    session.headers["User-Agent"] = USER_AGENT
    session.mount("https://", TLSProfileAdapter(profile, max_retries=0))
    log.debug("transport.session_built profile=%s", profile.name)
    return session
