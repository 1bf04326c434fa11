"""
Render Worker

Renders declarative image+text timelines into MP4 videos with FFmpeg:
- Timelines are submitted to an RQ queue (one message per job)
- Workers compile each timeline into an FFmpeg command, run it under a
  hard timeout, upload the output to S3-compatible storage and notify
  the caller's webhook
- Job state lives in a SQL database (SQLAlchemy)
"""

__version__ = "0.1.0"
