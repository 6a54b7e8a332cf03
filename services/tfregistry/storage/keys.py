"""
Key path helpers for object storage.

Provides consistent key naming for all stored registry artifacts.
A given (module-or-provider, version) always maps to the same key.
"""

# --- Module Registry ---


def module_tarball_key(namespace: str, name: str, system: str, version: str) -> str:
    """Key for a published module version tarball."""
    return f"modules/{namespace}/{name}/{system}/{name}-{version}.tar.gz"


# --- Provider Registry ---


def provider_version_prefix(org: str, namespace: str, name: str, version: str) -> str:
    return f"providers/{org}/{namespace}/{name}/{version}"


def provider_binary_key(
    org: str, namespace: str, name: str, version: str, os_: str, arch: str
) -> str:
    """Key for a provider binary zip."""
    prefix = provider_version_prefix(org, namespace, name, version)
    return f"{prefix}/terraform-provider-{name}_{version}_{os_}_{arch}.zip"


def provider_shasums_key(org: str, namespace: str, name: str, version: str) -> str:
    """Key for a provider version's SHA256SUMS file."""
    prefix = provider_version_prefix(org, namespace, name, version)
    return f"{prefix}/terraform-provider-{name}_{version}_SHA256SUMS"


def provider_shasums_sig_key(org: str, namespace: str, name: str, version: str) -> str:
    """Key for a provider version's detached SHA256SUMS signature."""
    return provider_shasums_key(org, namespace, name, version) + ".sig"
