"""Release pipeline for a self-hosted web analytics stack.

Takes a backup, updates the checked-out source, rebuilds and restarts the
compose services, runs the application's migrations, verifies health and
reports the outcome to a webhook.
"""

__version__ = "0.3.0"
