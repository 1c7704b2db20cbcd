"""Remote data authority interface and its Supabase implementation."""
