"""Real-time chat rooms: connections, membership, history and presence.

Room state lives in process memory only and is lost on restart.
"""
