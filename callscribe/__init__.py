"""callscribe: live phone-call audio to streaming transcripts."""
