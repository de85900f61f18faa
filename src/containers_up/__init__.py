"""Containers Up: dependency-update rollout for docker compose hosts.

Receives pull-request webhooks from a dependency bot, pulls and restarts the
affected compose units over SSH, squashes bot commits on the remote branch,
and scans running services for newer registry digests.
"""

__version__ = "0.4.0"
