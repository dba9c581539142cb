"""External collaborators reached over the network."""
