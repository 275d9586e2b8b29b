# This module handles context assembly for the ReAct loop

# +---------------------+   +---------------------+   +---------------------+
# |     Short-term      |   |      Long-term      |   |      Episodic       |
# |---------------------|   |---------------------|   |---------------------|
# | Steps of this run   |   | Facts, preferences  |   | One summary per     |
# | (discarded at end)  |   | outcomes, per agent |   | finished execution  |
# +---------------------+   +---------------------+   +---------------------+
#            \                        |                        /
#             \                       |                       /
#              v                      v                      v
# +----------------------------------------------------------------+
# |                        Context window                          |
# |----------------------------------------------------------------|
# | System instructions, goals, constraints, tool names            |
# | Ranked long-term memories, recent episodes                     |
# | Summary / digests of overflowing steps                         |
# | Current input, then recent steps newest-first within budget    |
# +----------------------------------------------------------------+
#                                |
#                                v
#                    [Model gateway / tool call]
