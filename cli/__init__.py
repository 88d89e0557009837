"""Developer CLI for provisioning rooms, pushing readings and driving the worker."""

# The Typer application lives in ``cli.app``. It is not re-exported here so
# that tests can keep patching attributes on that module path.

__all__ = []
