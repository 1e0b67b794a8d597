from __future__ import annotations
from context import classes, database, populate, relations, shapes
from packify import UsageError
import unittest


class TestSelectors(unittest.TestCase):
    def test_wants(self):
        assert populate.wants(None, 'tags')
        assert populate.wants({'tags': None}, 'tags')
        assert not populate.wants({'posts': None}, 'tags')
        assert not populate.wants(True, 'tags')
        assert not populate.wants(False, 'tags')

    def test_child_selector(self):
        assert populate.child_selector(None, 'tags') is None
        assert populate.child_selector({'tags': True}, 'tags') is True
        assert populate.child_selector({'tags': {'posts': None}}, 'tags') == {'posts': None}


class TestPopulate(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        class Post(classes.Model):
            schema = {'title': str}
            relations = {'tags': relations.has_many('Tag')}

        class Tag(classes.Model):
            schema = {'label': str}
            relations = {'posts': relations.has_many('Post')}

        class Weapon(classes.Model):
            schema = {'name': str}

        class Character(classes.Model):
            schema = {'name': str}
            relations = {'equipped_weapon': relations.has_one('Weapon')}

        class Author(classes.Model):
            schema = {'name': str}
            relations = {'books': relations.has_many('Book')}

        class Book(classes.Model):
            schema = {'title': str}
            relations = {'publisher': relations.belongs_to('Publisher')}

        class Publisher(classes.Model):
            schema = {'name': str}

        class A(classes.Model):
            schema = {'name': str}
            relations = {'b': relations.has_one('B')}

        class B(classes.Model):
            schema = {'name': str}
            relations = {'a': relations.has_one('A')}

        self.Post, self.Tag = Post, Tag
        self.Weapon, self.Character = Weapon, Character
        self.Author, self.Book, self.Publisher = Author, Book, Publisher
        self.A, self.B = A, B
        self.db = database.Database()
        self.db.register(Post, Tag, Weapon, Character, Author, Book, Publisher, A, B)
        await self.db.connect()

    async def asyncTearDown(self) -> None:
        await self.db.disconnect()

    async def test_many_to_many_populate_from_instance(self):
        post = self.Post({'title': 'post'})
        tag1 = self.Tag({'label': 'one'})
        tag2 = self.Tag({'label': 'two'})
        post.tags.add(tag1)
        post.tags.add(tag2)
        await post.save()
        assert post in tag1.posts

        post = await self.Post.get(post.id).run()
        assert len(post.tags) == 0
        await post.populate()
        assert [tag.label for tag in post.tags] == ['one', 'two']
        assert [tag.id for tag in post.tags] == [tag1.id, tag2.id]
        for tag in post.tags:
            assert post in tag.posts
            assert not tag.is_dirty
        assert not post.is_dirty

    async def test_populate_on_query_merges_every_result(self):
        post = self.Post({'title': 'post'})
        tag = self.Tag({'label': 'tag'})
        post.tags.add(tag)
        await post.save()
        await self.Post({'title': 'untagged'}).save()

        posts = await self.Post.populate().run()
        assert len(posts) == 2
        tags = {p.title: [t.label for t in p.tags] for p in posts}
        assert tags == {'post': ['tag'], 'untagged': []}

        found = await self.Post.get(post.id).populate().run()
        assert isinstance(found, self.Post)
        assert found.tags[0].id == tag.id

    async def test_single_record_populate_guards_null(self):
        assert await self.Post.get('missing').populate().run() is None

        chain = self.Post.query().get('missing').populate()
        assert chain.ops[-1][0] is shapes.Op.DO
        chain = self.Post.query().populate()
        assert chain.ops[-1][0] is shapes.Op.MAP

    async def test_has_one_and_belongs_to_populate(self):
        weapon = await self.Weapon({'name': 'sword'}).save()
        armed = self.Character({'name': 'armed'})
        armed.equipped_weapon = weapon
        await armed.save()
        unarmed = await self.Character({'name': 'unarmed'}).save()

        found = await self.Character.get(armed.id).populate().run()
        assert isinstance(found.equipped_weapon, self.Weapon)
        assert found.equipped_weapon.name == 'sword'

        found = await self.Character.get(unarmed.id).populate().run()
        assert found.equipped_weapon is None

        book = self.Book({'title': 'book'})
        book.publisher = self.Publisher({'name': 'press'})
        await book.save()
        author = self.Author({'name': 'writer'})
        author.books.add(book)
        await author.save()

        found = await self.Author.get(author.id).populate().run()
        assert [b.title for b in found.books] == ['book']
        assert found.books[0].publisher.name == 'press'

    async def test_selector_limits_expansion(self):
        book = self.Book({'title': 'book'})
        book.publisher = self.Publisher({'name': 'press'})
        author = self.Author({'name': 'writer'})
        author.books.add(book)
        await author.save()

        raw = await self.db.execute(
            self.Author.query().get(author.id).populate({'books': True}).to_term()
        )
        assert [b['title'] for b in raw['books']] == ['book']
        assert 'publisher' not in raw['books'][0]

        raw = await self.db.execute(
            self.Author.query().get(author.id).populate({'books': {'publisher': None}}).to_term()
        )
        assert raw['books'][0]['publisher']['name'] == 'press'

        raw = await self.db.execute(
            self.Author.query().get(author.id).populate({}).to_term()
        )
        assert 'books' not in raw

    async def test_cycles_expand_each_model_once_per_path(self):
        a = self.A({'name': 'a'})
        b = self.B({'name': 'b'})
        a.b = b
        b.a = a
        await a.save()

        raw = await self.db.execute(self.A.query().get(a.id).populate().to_term())
        assert raw['b']['id'] == b.id
        assert raw['b']['a']['id'] == a.id
        assert 'b' not in raw['b']['a']

        found = await self.A.get(a.id).populate().run()
        assert found.b.a is found

    async def test_populate_errors(self):
        with self.assertRaises(TypeError):
            self.Post.query().populate('tags')
        with self.assertRaises(UsageError):
            self.db.query().table('Post').populate()
        with self.assertRaises(UsageError):
            await self.Post({'title': 'unsaved'}).populate()


if __name__ == '__main__':
    unittest.main()
