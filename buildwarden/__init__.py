"""Build Warden: build, repair, launch and verify generated Next.js apps."""

__version__ = "0.1.0"
