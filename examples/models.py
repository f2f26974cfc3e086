"""Minimal shapes for sqla-preload examples."""

from __future__ import annotations

from dataclasses import dataclass, field

from sqla_preload import column, relation


@dataclass
class User:
    __tablename__ = "users"

    id: int | None = column(None, primary_key=True)
    name: str = ""

    posts: list[Post] = relation(default_factory=list, foreign_key="author_id")
    roles: list[Role] = relation(default_factory=list, many2many="user_roles")
    profile: Profile | None = None


@dataclass
class Post:
    __tablename__ = "posts"

    id: int | None = None
    title: str = ""
    author_id: int | None = None

    author: User | None = relation(None, foreign_key="author_id")
    comments: list[Comment] = field(default_factory=list)


@dataclass
class Comment:
    __tablename__ = "comments"

    id: int | None = None
    text: str = ""
    post_id: int | None = None

    reactions: list[Reaction] = field(default_factory=list)


@dataclass
class Reaction:
    __tablename__ = "reactions"

    id: int | None = None
    emoji: str = ""
    comment_id: int | None = None


@dataclass
class Role:
    __tablename__ = "roles"

    id: int | None = None
    name: str = ""
    level: int = 0

    users: list[User] = relation(default_factory=list, many2many="user_roles")


@dataclass
class Profile:
    __tablename__ = "profiles"

    id: int | None = None
    bio: str = ""
    user_id: int | None = None


@dataclass
class Category:
    __tablename__ = "categories"

    id: int | None = None
    name: str = ""
    parent_id: int | None = None

    parent: Category | None = None
    children: list[Category] = relation(default_factory=list, foreign_key="parent_id")


SHAPES = (User, Post, Comment, Reaction, Role, Profile, Category)
