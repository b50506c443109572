"""
Collector daemon package for the Shelly-to-InfluxDB pipeline.

Polls Shelly power-monitoring devices over HTTP, tracks per-device health,
normalizes readings into canonical metric points, and writes them to
InfluxDB through a bounded, retrying write buffer.

CHANGELOG:
- 2026-10-02: Initial creation (STORY-100)

TODO:
- None
"""
