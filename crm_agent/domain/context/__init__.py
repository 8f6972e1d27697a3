# This module assembles the memory an agent sees on each turn

# +---------------------+       +---------------------+
# |   Working memory    |       |   Session memory    |
# |---------------------|       |---------------------|
# | Current page        |       | Last <=5 messages   |
# | Active entity       |       | Topic summary       |
# | Recent actions      |       | (conversation store)|
# | Pending approvals   |       +---------------------+
# | Draft in progress   |                 |
# +---------------------+                 |
#            \     (fetched concurrently) /
#             \                          /
#              v                        v
# +------------------------------------------+
# |         <memory_context> block           |
# |------------------------------------------|
# | <= 2000 chars, each message <= 200 chars |
# | empty string when there is nothing       |
# +------------------------------------------+
#                      |
#                      v
#        prepended to the specialist prompt
