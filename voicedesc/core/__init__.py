"""Core: configuration, exceptions, shared enums and the job/blob stores."""
