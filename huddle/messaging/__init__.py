"""huddle.messaging — thread windows, live sync and the send path.

Usage
-----
    from huddle.messaging import ThreadSyncEngine, MessageSender, Sender

    engine = ThreadSyncEngine(store, page_size=50)
    engine.start()                          # subscribe to message inserts

    window = await engine.open_thread("thread-1")
    await engine.load_older("thread-1")     # prepend the next older page

    sender = MessageSender(store, engine, notifier, names)
    result = await sender.send("Hey @{userId:u-42}", "thread-1", "channel",
                               Sender(id="u-1", display_name="Bob"))
    engine.close()
"""
from huddle.messaging.models import Message
from huddle.messaging.send import MessageSender, Sender, SendResult
from huddle.messaging.sync import PAGE_SIZE, ThreadSyncEngine
from huddle.messaging.window import ThreadWindow

__all__ = [
    "Message",
    "MessageSender",
    "PAGE_SIZE",
    "Sender",
    "SendResult",
    "ThreadSyncEngine",
    "ThreadWindow",
]
