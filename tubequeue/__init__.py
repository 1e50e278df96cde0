"""Job queue that downloads and catalogues media with yt-dlp."""

__version__ = "0.1.0"
