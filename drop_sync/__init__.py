"""Drop Sync: resumable uploader for a watched drop folder.

Watches a folder for files that have finished being written and uploads
each one to object storage in resumable blocks, deleting the local copy
once the remote object is complete.
"""

__version__ = "1.0.0"
__app_name__ = "Drop Sync"
