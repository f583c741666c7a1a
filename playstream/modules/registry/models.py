# Supabase tables backing the registry store
# Actual operations are handled via Supabase SDK in service.py

"""
Expected Supabase table structure:

gaming_instances
- instance_id: text (primary key) - backend id, or 'pending-<executionName>' placeholder
- user_id: text (not null, indexed together with creation_time desc)
- arn: text (nullable)
- status: text (not null) - values: deploying, running, terminating, terminated
- execution_id: text (nullable) - active workflow execution
- creation_time: timestamptz (not null)
- last_modified_time: timestamptz (nullable)
- terminated_at: timestamptz (nullable)

streaming_sessions
- instance_arn: text (primary key)
- instance_id: text (not null)
- user_id: text (not null, indexed together with created_at desc)
- session_id: text (not null)
- host: text (not null)
- port: integer (not null)
- username: text (not null)
- password: text (not null) - per-instance secret, encrypted at rest
- streaming_link: text (not null)
- created_at: timestamptz (default: now())
- updated_at: timestamptz (nullable)

stream_locks
- user_id: text (primary key)
- execution_id: text (not null)
- acquired_at: timestamptz (not null)
"""
