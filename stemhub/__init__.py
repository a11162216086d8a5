"""StemHub — stage/upstream revision workflow for collaborative stem-based tracks."""
