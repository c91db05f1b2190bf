"""ocireplica: copy and back up OCI artifacts between registries and layouts.

Commands:
  - ``cp``     : copy an artifact, optionally with its referrers, between
    registries and OCI layouts, then apply extra tags
  - ``backup`` : pull tagged artifacts into an OCI layout directory or tar
  - ``tags``   : list the tags of a repository or layout
"""

__version__ = "0.1.0"
__description__ = "Copy and back up OCI artifacts with their referrers"

__all__ = ["__version__"]
