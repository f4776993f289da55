"""codeindex command-line interface."""
