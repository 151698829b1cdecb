import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../../src')))

project = 'AMM-Ledger'
copyright = '2025, Auralshin'
author = 'Auralshin'
release = '1.0.0'

extensions = [
    'sphinx.ext.autodoc',
    'sphinx.ext.napoleon',
    'sphinx.ext.viewcode',
]

exclude_patterns = []

html_theme = 'alabaster'

autodoc_member_order = 'bysource'

# ledger docstrings use Google style, the math helpers use numpy style
napoleon_google_docstring = True
napoleon_numpy_docstring = True
napoleon_include_init_with_doc = True
napoleon_include_private_with_doc = False
