"""Decoding, statistics and strategy learning for the ORE board game"""
