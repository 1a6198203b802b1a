"""Worker-execution collaborators."""
