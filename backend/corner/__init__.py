"""Corner publish service: drafts, revision-gated publishing and ownership claims."""
