"""extforge: build, sign and publish monitoring extensions."""

from extforge.__version__ import __version__
