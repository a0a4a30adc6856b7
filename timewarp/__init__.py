"""timewarp — bisect, interactive rebase and reflog time travel over git history."""
