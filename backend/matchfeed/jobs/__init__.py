"""Background jobs: match scores, compatibility and feed presort."""
