"""splicekit: a non-linear video editing engine.

Edit a project of video and audio tracks with keyframed opacity, scale,
position and volume, undo any edit, and compile the timeline into a
render plan that ffmpeg executes.
"""
