"""
Render Worker Tasks

Pipeline components used by the RQ task:
- timeline_compiler: Downloads clip images and builds the FFmpeg command
- ffmpeg_runner: Runs FFmpeg with timeout enforcement
- job_state: Job lifecycle persistence
- notifications: Webhook delivery of terminal outcomes
- render: Orchestration and the RQ entry point (render_job)
"""

from .render import RenderProcessor, get_render_processor, render_job

__all__ = [
    "RenderProcessor",
    "get_render_processor",
    "render_job",
]
