"""Service layer: configuration resolution, catalog access and the download loop."""
