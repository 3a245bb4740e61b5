"""
Alerting: periodic evaluation of stored attacker / victim / activity data and
delivery through pluggable sinks (log, Discord-style webhook, email).
"""
