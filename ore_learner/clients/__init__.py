"""RPC transport adapters"""
