"""
Client-side pieces: state containers, change-feed consumer, HTTP client.

    from resq.client.state import EntityState, UiPreferences
    from resq.client.feed import ChangeFeedConsumer
    from resq.client.api import ResQClient
"""
