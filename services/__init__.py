"""speechctl - Installer services (manifest fetch, artifact selection, download)."""
