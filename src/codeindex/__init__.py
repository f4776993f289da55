"""codeindex — local semantic code indexing and retrieval."""
