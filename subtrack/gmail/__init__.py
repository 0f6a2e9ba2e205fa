"""Gmail message source adapter: listing, fetching and parsing billing emails."""
