"""Provider implementations of the sync collaborator interfaces."""
