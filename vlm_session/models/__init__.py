"""Runtime binding protocol, concrete bindings and error types."""
