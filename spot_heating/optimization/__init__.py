"""Price slot optimization and heating schedule repair."""
