"""
Downloader for creator-published models and images from the Civitai catalog.

Modules are organized to separate configuration resolution, catalog access, the
container download loop, the web server and process supervision so that the CLI and
the container runtime can evolve independently.
"""

__version__ = "0.1.0"
