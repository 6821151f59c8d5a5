"""
TLS material cache for HTTPS endpoints.

Certificate, key and CA files are read once per configuration and turned into
an ``ssl.SSLContext`` that every HTTPS request reuses until the connection
configuration changes.
"""

import ssl
from dataclasses import dataclass, field, replace
from pathlib import Path

import structlog

from .config import TlsConfig, resolve_cert_path
from .exceptions import ConfigurationError

logger = structlog.get_logger(__name__)

TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


@dataclass(frozen=True)
class TlsMaterial:
    """
    Loaded TLS files and settings. Replaced, never mutated.

    CA bundles are held in memory; the client certificate and key are loaded
    by path because ``SSLContext.load_cert_chain`` only accepts files.
    """

    ca_data: tuple[bytes, ...] = ()
    cert_file: Path | None = None
    key_file: Path | None = None
    passphrase: str | None = None
    min_version: str | None = None
    max_version: str | None = None
    # None unless validation was explicitly switched off
    reject_unauthorized: bool | None = None
    context: ssl.SSLContext | None = field(default=None, compare=False, repr=False)


def _tls_version(name: str) -> ssl.TLSVersion:
    try:
        return TLS_VERSIONS[name]
    except KeyError as e:
        raise ConfigurationError(
            f"Unsupported TLS version: {name}", {"allowed": sorted(TLS_VERSIONS)}
        ) from e


def _read(path: Path, what: str) -> bytes:
    try:
        return path.read_bytes()
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read {what}: {path}", {"error": str(e)}
        ) from e


def build_ssl_context(material: TlsMaterial) -> ssl.SSLContext:
    """
    Build an SSL context from loaded material.

    Args:
        material: TLS material without a context

    Returns:
        Client SSL context
    """
    try:
        if material.ca_data:
            cadata = "\n".join(ca.decode("ascii") for ca in material.ca_data)
            context = ssl.create_default_context(cadata=cadata)
        else:
            context = ssl.create_default_context()

        if material.cert_file and material.key_file:
            context.load_cert_chain(
                material.cert_file,
                material.key_file,
                password=material.passphrase,
            )
    except (ssl.SSLError, OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(
            "Failed to load TLS material", {"error": str(e)}
        ) from e

    if material.min_version:
        context.minimum_version = _tls_version(material.min_version)

    if material.max_version:
        context.maximum_version = _tls_version(material.max_version)

    if material.reject_unauthorized is False:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    return context


class TlsMaterialCache:
    """
    Lazily loads and caches TLS material for one connection configuration.

    The cache must be invalidated whenever the connection configuration
    changes.
    """

    def __init__(self, tls_config: TlsConfig, base_dir: Path):
        """
        Initialize the cache.

        Args:
            tls_config: TLS section of the normalized configuration
            base_dir: Directory relative paths are resolved against
        """
        self.tls_config = tls_config
        self.base_dir = base_dir
        self._material: TlsMaterial | None = None

    def load(self) -> TlsMaterial:
        """
        Get the cached material, loading it on first use.

        Raises:
            ConfigurationError: If a file cannot be read or parsed
        """
        if self._material is not None:
            return self._material

        tls = self.tls_config
        ca_data = tuple(
            _read(resolve_cert_path(p, self.base_dir), "CA certificate")
            for p in tls.ca_paths
        )

        cert_file = key_file = None
        passphrase = None
        if tls.cert and tls.key:
            cert_file = resolve_cert_path(tls.cert, self.base_dir)
            key_file = resolve_cert_path(tls.key, self.base_dir)
            passphrase = tls.passphrase or None

        material = TlsMaterial(
            ca_data=ca_data,
            cert_file=cert_file,
            key_file=key_file,
            passphrase=passphrase,
            min_version=tls.min_version or None,
            max_version=tls.max_version or None,
            reject_unauthorized=False if tls.reject_unauthorized is False else None,
        )
        material = replace(material, context=build_ssl_context(material))

        logger.debug(
            "TLS material loaded",
            ca_count=len(ca_data),
            client_cert=cert_file is not None,
            min_version=material.min_version,
            max_version=material.max_version,
        )

        self._material = material
        return material

    def ssl_context(self) -> ssl.SSLContext:
        """Get the SSL context for HTTPS requests."""
        context = self.load().context
        if context is None:
            raise ConfigurationError("TLS material has no SSL context")
        return context

    def configure(self, tls_config: TlsConfig) -> None:
        """Switch to a new TLS configuration and drop the cached material."""
        self.tls_config = tls_config
        self.invalidate()

    def invalidate(self) -> None:
        """Drop the cached material."""
        if self._material is not None:
            logger.debug("TLS material invalidated")
        self._material = None
