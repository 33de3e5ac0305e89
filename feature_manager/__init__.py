"""Deploy feature bundles (role policies, policy engine, monitoring) to clusters."""

__all__ = [
    "manifest",
    "store",
    "scope",
    "deployer",
    "controller",
    "exceptions",
]
