import os
import sys

sys.path.insert(0, os.path.abspath("../.."))

project = "Camera Rental Back Office"
copyright = "2026, Camera Rental"
author = "Camera Rental"
release = "0.1.0"

extensions = [
    "sphinx.ext.autodoc",
    "sphinx.ext.napoleon",
    "sphinx.ext.viewcode",
]

templates_path = ["_templates"]
exclude_patterns: list[str] = []

html_theme = "sphinx_rtd_theme"
html_static_path = ["_static"]
