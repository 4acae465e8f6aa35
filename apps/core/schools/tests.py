from django.test import TestCase

from apps.core.schools.models import School


class SchoolCodeTests(TestCase):
    def test_code_is_generated_from_name(self):
        school = School.objects.create(name='Green Valley High')
        self.assertEqual(school.code, 'green_valley_high')

    def test_generated_code_is_made_unique(self):
        School.objects.create(name='Green Valley High')
        second = School.objects.create(name='Green Valley High')
        third = School.objects.create(name='Green Valley High')
        self.assertEqual(second.code, 'green_valley_high_1')
        self.assertEqual(third.code, 'green_valley_high_2')

    def test_explicit_code_is_kept(self):
        school = School.objects.create(name='Lake School', code='lake_main')
        self.assertEqual(school.code, 'lake_main')

    def test_current_academic_year_is_trimmed(self):
        school = School.objects.create(name='Trim School', current_academic_year=' 2026-27 ')
        self.assertEqual(school.current_academic_year, '2026-27')
