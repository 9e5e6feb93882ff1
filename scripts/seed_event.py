# scripts/seed_event.py
import argparse  # parse CLI args
import uuid  # generate ids

from checkin.credentials import encode  # credential codec
from checkin.db import Base, SessionLocal, engine  # server store
from checkin.models import Attendee, Event, Ticket, TicketTier  # rows we create
from checkin.stations import register_station  # station bookkeeping

def main() -> None:  # main entrypoint
    parser = argparse.ArgumentParser()  # CLI parser
    parser.add_argument("--title", default="Demo Event")  # event title
    parser.add_argument("--tickets", type=int, default=5)  # how many tickets to issue
    parser.add_argument("--station-id", default="station_1")  # station to register
    parser.add_argument("--no-badges", action="store_true")  # tier without badges
    args = parser.parse_args()  # parse args

    Base.metadata.create_all(bind=engine)  # make sure tables exist
    event_id = f"evt_{uuid.uuid4().hex[:8]}"  # hyphen-free, the credential delimiter is '-'
    tier_id = f"tier_{uuid.uuid4().hex[:8]}"  # single tier

    db = SessionLocal()  # one session for the whole seed
    try:
        db.add(Event(id=event_id, title=args.title))  # the event
        db.add(TicketTier(id=tier_id, event_id=event_id, name="General", badge_required=not args.no_badges))  # the tier
        for i in range(1, args.tickets + 1):  # issue tickets
            ticket_id = f"tkt_{uuid.uuid4().hex[:10]}"  # ticket id
            owner_id = f"usr_{uuid.uuid4().hex[:12]}"  # attendee id, feeds the checksum
            db.add(Attendee(id=owner_id, full_name=f"Guest {i}", email=f"guest{i}@example.com"))  # attendee
            credential = encode(ticket_id, event_id, owner_id)  # scannable string
            db.add(Ticket(id=ticket_id, event_id=event_id, tier_id=tier_id, attendee_id=owner_id, credential=credential))  # ticket row
            print(credential)  # output credential to stdout
        db.commit()  # persist tickets
        register_station(db, args.station_id, event_id, name=f"Station {args.station_id}")  # station row
    finally:
        db.close()  # release connection

if __name__ == "__main__":  # run as script
    main()  # call main
