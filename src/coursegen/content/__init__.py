"""Course content persistence and external content collaborators."""
