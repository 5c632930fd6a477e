"""
Core memory components: chunking, vector index, tables, cache, ranking,
the memory store and its maintenance scheduler.
"""
