from importlib import metadata

try:
    ARAZZO_ENGINE_VERSION = metadata.version("arazzo-engine")
except metadata.PackageNotFoundError:
    # Local run without installation
    ARAZZO_ENGINE_VERSION = "dev"
