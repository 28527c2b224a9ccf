"""
Resolution of secret references stored on tenant, office and CRM rows.
"""
import os


class SecretNotConfigured(Exception):
    """Raised when an ``env:`` reference points at an unset variable."""
    pass


ENV_PREFIX = 'env:'


def resolve_secret(reference: str) -> str:
    """
    Resolve ``env:NAME`` from the environment; any other value is returned as-is.

    Raises:
        SecretNotConfigured: If the reference is empty or the variable is unset
    """
    if not reference:
        raise SecretNotConfigured("empty secret reference")
    if reference.startswith(ENV_PREFIX):
        name = reference[len(ENV_PREFIX):]
        value = os.getenv(name)
        if not value:
            raise SecretNotConfigured(f"environment variable {name} is not set")
        return value
    return reference
