"""External collaborators: version control and notifications."""
