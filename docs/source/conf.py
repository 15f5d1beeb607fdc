import os
import sys
sys.path.insert(0, os.path.abspath('../..'))  # points to repo root

# Configuration file for the Sphinx documentation builder.
#
# For the full list of built-in configuration values, see the documentation:
# https://www.sphinx-doc.org/en/master/usage/configuration.html

# -- Project information -----------------------------------------------------

project = 'Library Study-Room Reservations'
copyright = '2025, Library Study-Room Reservations contributors'
author = 'Library Study-Room Reservations contributors'
release = '1.0.0'

# -- General configuration ---------------------------------------------------

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",   # numpy style docstrings
    "sphinx.ext.viewcode",
    "sphinx.ext.autosummary",
]
autosummary_generate = True

# Services read these at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///./docs_build.db")
os.environ.setdefault("TESTING", "1")

templates_path = ['_templates']
exclude_patterns = []

# -- Options for HTML output -------------------------------------------------

html_theme = 'alabaster'
html_static_path = ['_static']
