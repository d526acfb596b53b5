# This module handles Context engineering for the relay

# +---------------------+
# |      Memory         |   (Persistent, remote, best effort)
# |---------------------|
# | Message log         |
# | Facts & goals       |
# | Semantic search     |
# +---------------------+

# +---------------------+
# |      State          |   (Local, durable, single session)
# |---------------------|
# | Continuation token  |
# | Model / mode        |
# | Token usage         |
# | Current project     |
# +---------------------+

# +---------------------+
# |     Workspace       |   (Markdown documents on disk)
# |---------------------|
# | SOUL / AGENTS /     |
# |   TOOLS / MEMORY    |
# | Daily log           |
# +---------------------+

#    \    |    /
#     \   |   /
#      \  |  /
# +------------------------------+
# |           Prompt             |   (Assembled fresh every turn)
# |------------------------------|
# | Persona & guides             |
# | Current time (user zone)     |
# | Facts, goals, past messages  |
# | Memory tag grammar           |
# | User message                 |
# +------------------------------+
#         |
#         v
#   [Engine invocation, resumed by continuation token]
