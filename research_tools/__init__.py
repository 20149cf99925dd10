from research_tools.action_tracker import ActionTracker, TrackerContext
from research_tools.usage import TokenTracker

__all__ = ["ActionTracker", "TokenTracker", "TrackerContext"]
