"""
Ollama Manager.

Starts, stops and monitors a local Ollama inference server and reports its
status and memory usage to subscribers.
"""
