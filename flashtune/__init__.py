"""
FlashTune - USB music library manager.

A single FastAPI service that downloads audio through yt-dlp and ffmpeg,
stores the MP3s on a USB drive, and keeps the drive's SQLite library
database (songs and playlists) in sync with a local working copy.
"""
