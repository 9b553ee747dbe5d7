"""workplan: consistent completion, dates and ids for hierarchical work items."""
