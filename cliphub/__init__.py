"""cliphub — content-interaction backend (posts, likes, comments, collections)."""
