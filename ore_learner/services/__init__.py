"""Services wiring the learning core to RPC and storage"""
