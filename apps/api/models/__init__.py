"""Models package."""

from .video_identity import VideoIdentity
from .content import Content
