"""Sphinx configuration for portalctl documentation."""
from __future__ import annotations

from portalctl import __version__ as release

project = "portalctl"
author = "portalctl contributors"
version = release

extensions = ["sphinx.ext.autodoc"]
autodoc_default_options = {"members": True, "show-inheritance": True}
autodoc_member_order = "bysource"

html_theme = "sphinx_rtd_theme"

rst_epilog = f"""
.. |release| replace:: v{release}
"""
