# State = everything needed to resume the user's single upstream conversation.

# **It's "the NOW" of the relay, including:

# The continuation token handed back by the engine

# Preferences (model tier, permission mode, thinking depth, verbose)

# Lifetime and per-session token counters

# The current project and the time of last activity
