# Turn orchestration
#
#   begin_turn --> call_model --> [execute_tools] --> decide
#       ^                                               |
#       +------------------ continue -------------------+
#
# begin_turn stops on cancellation or when the turn budget is spent,
# call_model stops on transport errors, decide stops on any terminal outcome.
