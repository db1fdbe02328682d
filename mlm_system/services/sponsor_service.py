# mlm_system/services/sponsor_service.py
"""
Sponsor directory - resolves users and walks the sponsor chain.
"""
from typing import List, Optional
from sqlalchemy.orm import Session
import logging

from models import User
from mlm_system.errors import SponsorNotFound

logger = logging.getLogger(__name__)


class SponsorService:
    """Read-only access to the user sponsor graph."""

    def __init__(self, session: Session):
        self.session = session

    def findUserByUsername(self, username: str) -> Optional[User]:
        return self.session.query(User).filter_by(username=username).first()

    def findSponsor(self, user: User) -> Optional[User]:
        if not user.sponsorID:
            return None
        return self.session.query(User).filter_by(userID=user.sponsorID).first()

    def findSponsorChain(self, user: User, maxDepth: int) -> List[User]:
        """
        Upline of user, nearest first, at most maxDepth users.
        Stops on a missing sponsor or on a loop in the sponsor graph.
        """
        chain = []
        visited = {user.userID}
        currentUser = user

        while currentUser.sponsorID and len(chain) < maxDepth:
            sponsor = self.findSponsor(currentUser)

            if not sponsor:
                logger.warning(
                    f"Sponsor {currentUser.sponsorID} of user {currentUser.userID} not found"
                )
                break

            if sponsor.userID in visited:
                logger.error(f"Sponsor loop detected at user {sponsor.userID}")
                break

            visited.add(sponsor.userID)
            chain.append(sponsor)
            currentUser = sponsor

        return chain

    def applySponsorHint(self, user: User, sponsorUsername: str) -> User:
        """
        Resolve an explicit sponsor for an entry and record it on the user.
        The caller commits.
        """
        sponsor = self.findUserByUsername(sponsorUsername)
        if not sponsor:
            raise SponsorNotFound(sponsorUsername)

        if sponsor.userID == user.userID:
            raise SponsorNotFound(sponsorUsername, "cannot sponsor itself")

        # Reject hints that would close a loop in the sponsor graph
        for upline in self.findSponsorChain(sponsor, maxDepth=1000):
            if upline.userID == user.userID:
                raise SponsorNotFound(sponsorUsername, "is in the downline of the entrant")

        if user.sponsorID != sponsor.userID:
            logger.info(f"Sponsor of {user.username} set to {sponsor.username}")
            user.sponsorID = sponsor.userID

        return sponsor
