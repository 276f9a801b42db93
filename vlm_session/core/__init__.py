"""Session core: bitmap staging, templates, the session manager and its worker."""
