"""
Sealbid core: configuration, the computation engine, the resumable
iterator, the claim protocol and persistence.
"""
