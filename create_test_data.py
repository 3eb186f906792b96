#!/usr/bin/env python3
"""
Create a realistic student roster for trying out the ERP imports.
"""
import random

import click
import pandas as pd
from faker import Faker

ROSTER_COLUMNS = ['Roll Number', 'Name', 'Email', 'Degree', 'Branch', 'Batch', 'Semester']


def generate_roster(count=60, degree='B.E', branch='CSE', batch='2023', semester=5, seed=None):
    """Return a DataFrame of students in the layout the roster import expects."""
    fake = Faker('en_IN')  # Indian locale for better names
    if seed is not None:
        Faker.seed(seed)
        random.seed(seed)

    year_code = batch[-2:]
    students_data = []
    for i in range(count):
        gender = random.choice(['Male', 'Female'])
        if gender == 'Male':
            first_name = fake.first_name_male()
        else:
            first_name = fake.first_name_female()
        last_name = fake.last_name()

        roll_number = f"{year_code}{branch.upper()}{str(i + 1).zfill(3)}"
        students_data.append({
            'Roll Number': roll_number,
            'Name': f"{first_name} {last_name}",
            'Email': f"{roll_number.lower()}@college.edu",
            'Degree': degree,
            'Branch': branch,
            'Batch': batch,
            'Semester': semester,
        })

    return pd.DataFrame(students_data, columns=ROSTER_COLUMNS)


def create_roster_file(output_file='students_roster.xlsx', **kwargs):
    df = generate_roster(**kwargs)
    df.to_excel(output_file, index=False, engine='openpyxl')
    return output_file, df


@click.command('generate-roster')
@click.option('--count', default=60, help='Number of students to generate.')
@click.option('--degree', default='B.E')
@click.option('--branch', default='CSE')
@click.option('--batch', default='2023', help='Joining year.')
@click.option('--semester', default=5)
@click.option('--output', default='students_roster.xlsx', help='Workbook to write.')
def generate_roster_command(count, degree, branch, batch, semester, output):
    """Write a Faker-generated student roster workbook."""
    output_file, df = create_roster_file(output, count=count, degree=degree, branch=branch, batch=batch,
                                         semester=semester)
    click.echo(f"Roster created: '{output_file}'")
    click.echo(f"Total Students: {len(df)}")
    click.echo(f"Batch: {degree} {branch} {batch}, semester {semester}")
    click.echo("Upload it to /api/admin/students/import once the batch exists")


if __name__ == "__main__":
    generate_roster_command()
