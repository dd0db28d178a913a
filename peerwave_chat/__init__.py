"""Peerwave Chat — a desktop client for the Peerwave streaming chat API."""
