from zasper_kernel._version import __version__
