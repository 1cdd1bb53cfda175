"""scmsrv: devfile resolution and SCM authorization service."""
