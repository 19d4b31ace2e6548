"""
Directory Module

Organizational lookups used for approver resolution: who an actor reports
to, which department they belong to and who heads that department. The
engine depends only on the abstract Directory; InMemoryDirectory backs
tests and embedded deployments.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import RLock
from typing import Dict, List, Optional


@dataclass
class Actor:
    """An employee who can request or approve work"""
    id: str
    name: str
    manager_id: Optional[str] = None
    department_id: Optional[str] = None
    email: Optional[str] = None


class Directory(ABC):
    """Abstract organizational directory"""
    
    @abstractmethod
    def get_manager(self, actor_id: str) -> Optional[str]:
        """Manager of the actor, or None"""
        pass
    
    @abstractmethod
    def get_department_head(self, department_id: str) -> Optional[str]:
        """Head of the department, or None"""
        pass
    
    @abstractmethod
    def get_department(self, actor_id: str) -> Optional[str]:
        """Department the actor belongs to, or None"""
        pass
    
    @abstractmethod
    def actor_exists(self, actor_id: str) -> bool:
        pass
    
    def get_display_name(self, actor_id: str) -> str:
        """Human readable name used in notification text"""
        return actor_id


class InMemoryDirectory(Directory):
    """Dictionary-backed directory"""
    
    def __init__(self, actors: Optional[List[Actor]] = None):
        self._actors: Dict[str, Actor] = {}
        self._department_heads: Dict[str, str] = {}
        self._lock = RLock()
        for actor in actors or []:
            self.add_actor(actor)
    
    def add_actor(self, actor: Actor) -> Actor:
        with self._lock:
            self._actors[actor.id] = actor
        return actor
    
    def remove_actor(self, actor_id: str) -> bool:
        with self._lock:
            return self._actors.pop(actor_id, None) is not None
    
    def set_manager(self, actor_id: str, manager_id: Optional[str]) -> None:
        with self._lock:
            actor = self._actors.get(actor_id)
            if not actor:
                raise ValueError(f"Actor {actor_id} not found")
            actor.manager_id = manager_id
    
    def set_department_head(self, department_id: str, actor_id: Optional[str]) -> None:
        with self._lock:
            if actor_id is None:
                self._department_heads.pop(department_id, None)
            else:
                self._department_heads[department_id] = actor_id
    
    def get_actor(self, actor_id: str) -> Optional[Actor]:
        with self._lock:
            return self._actors.get(actor_id)
    
    def get_manager(self, actor_id: str) -> Optional[str]:
        actor = self.get_actor(actor_id)
        return actor.manager_id if actor else None
    
    def get_department_head(self, department_id: str) -> Optional[str]:
        with self._lock:
            return self._department_heads.get(department_id)
    
    def get_department(self, actor_id: str) -> Optional[str]:
        actor = self.get_actor(actor_id)
        return actor.department_id if actor else None
    
    def actor_exists(self, actor_id: str) -> bool:
        with self._lock:
            return actor_id in self._actors
    
    def get_display_name(self, actor_id: str) -> str:
        actor = self.get_actor(actor_id)
        return actor.name if actor else actor_id
