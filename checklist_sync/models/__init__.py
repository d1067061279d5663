"""Plain-data resource definitions (no ORM: the store owns persistence)."""
