"""Request binding, endpoint execution, dispatch and the HTTP surface."""
