"""
VOTA — selfie video → face extraction → AI video generation → face swap.
"""
