"""External collaborators: blob storage."""
