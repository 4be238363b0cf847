"""Job entity and the streamer that feeds job files to a bot."""

from .job import FINISHED_STATES, Job, JobState, Stopwatch
from .job_streamer import JobStreamer, LineSource, count_lines, strip_comment

__all__ = [
    'FINISHED_STATES',
    'Job',
    'JobState',
    'JobStreamer',
    'LineSource',
    'Stopwatch',
    'count_lines',
    'strip_comment',
]
