"""Command groups for the order desk CLI."""
