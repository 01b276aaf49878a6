from . import collaborators, comments, editing, realtime, users

__all__ = ["collaborators", "comments", "editing", "realtime", "users"]
