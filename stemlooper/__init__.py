"""
Stem looper - eight phase-aligned seamless loops with equal-power auto-mixing.

Modules:
    decoder: Clip fetch, decode and resampling
    loop_builder: Equal-power crossfaded loop buffers
    automation: Scheduled gain ramps
    mixer: Track/master gain stages and rendering
    scheduler: Phase-aligned start/stop scheduling
    engine: EngineSession, the public façade
    commands: Dispatcher command surface
    osc: OSC control bus
    device: Offline and sounddevice output devices (the clock)
    config: EngineConfig and YAML loading
"""

__version__ = "0.1.0"

# Note: Modules are imported on-demand so `python -m stemlooper.cli` does not
# pull in the audio stack. Use: from stemlooper.engine import EngineSession
