"""ExamSecure: exam sessions with a live proctoring channel."""

from examsecure.app import create_app

__all__ = ["create_app"]
__version__ = "0.1.0"
