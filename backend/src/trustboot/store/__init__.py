"""Certificate store adapters.

This package provides:
- The abstract nickname-addressed store interface
- A file-backed store built on ``cryptography``
- An NSS store driven through ``certutil`` / ``pk12util``
"""

from pathlib import Path

from trustboot.store.base import CertificateStore
from trustboot.store.file_store import FileCertificateStore
from trustboot.store.nss_store import NssCertificateStore

BACKENDS: dict[str, type[CertificateStore]] = {
    FileCertificateStore.backend: FileCertificateStore,
    NssCertificateStore.backend: NssCertificateStore,
}


def open_store(backend: str, path: Path, access_secret: str) -> CertificateStore:
    """Build the adapter for ``backend``; the store itself is created lazily."""
    try:
        store_cls = BACKENDS[backend]
    except KeyError:
        raise ValueError(
            f"unknown store backend {backend!r}; expected one of {sorted(BACKENDS)}"
        ) from None
    return store_cls(path, access_secret)


__all__ = ["CertificateStore", "FileCertificateStore", "NssCertificateStore", "open_store"]
