"""GarageFlow — appointment workflow engine for garage service operations."""
